# Room chat protocol constants (numeric keys and message types)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_ROOM = 5
K_BODY = 6
K_REF = 7

# Handshake
T_AUTH = 1
T_AUTH_OK = 2
T_LOGOUT = 3

# Room membership
T_JOIN_ROOM = 10
T_JOINED = 11
T_LEAVE_ROOM = 12
T_LEFT = 13
T_JOIN_PUBLIC = 14

# Chat traffic
T_SEND_MESSAGE = 20
T_NEW_MESSAGE = 21
T_TYPING_START = 22
T_TYPING_STOP = 23
T_USER_TYPING = 24
T_USER_ONLINE = 25
T_USER_OFFLINE = 26

T_PING = 30
T_PONG = 31

T_ERROR = 40

# Request/response reads
T_GET_ROOMS = 60
T_ROOMS = 61
T_GET_HISTORY = 62
T_HISTORY = 63
T_GET_MEMBERS = 64
T_MEMBERS = 65
T_SEARCH = 66
T_SEARCH_RESULTS = 67

# Message content types
MSG_TYPE_TEXT = "text"
MSG_TYPE_IMAGE = "image"
MSG_TYPE_FILE = "file"
MESSAGE_TYPES = (MSG_TYPE_TEXT, MSG_TYPE_IMAGE, MSG_TYPE_FILE)

# Member roles
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"

# Error codes carried in ERROR bodies
E_AUTH = "auth_error"
E_FORBIDDEN = "forbidden"
E_VALIDATION = "validation_error"
E_EMPTY_MESSAGE = "empty_message"
E_RATE_LIMITED = "rate_limited"
E_STORE_UNAVAILABLE = "store_unavailable"
E_INTERNAL = "internal_error"

# Search results are capped regardless of the requested limit.
SEARCH_MAX_RESULTS = 20
