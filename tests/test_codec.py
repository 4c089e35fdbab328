import pytest

from roomchatd.codec import decode, encode
from roomchatd.constants import K_BODY, T_NEW_MESSAGE
from roomchatd.envelope import make_envelope, validate_envelope
from roomchatd.errors import ValidationError


def test_codec_round_trip() -> None:
    env = make_envelope(
        T_NEW_MESSAGE,
        src=b"hub",
        room=1,
        body={"id": 7, "content": "hello", "sender": {"username": "alice"}},
    )
    data = encode(env)
    decoded = decode(data)
    assert decoded == env
    assert decoded[K_BODY]["sender"]["username"] == "alice"
    validate_envelope(decoded)


def test_decode_rejects_garbage() -> None:
    with pytest.raises(ValidationError):
        decode(b"\xff\xff\xff")


def test_decode_rejects_truncated_payload() -> None:
    data = encode(make_envelope(T_NEW_MESSAGE, room=1, body="hello"))
    with pytest.raises(ValidationError):
        decode(data[:-3])
