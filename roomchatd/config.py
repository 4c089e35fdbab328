from __future__ import annotations

from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    database_path: str | None = None
    dest_name: str = "roomchat.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "roomchat"
    default_room: str | None = "Fun Friday Group"
    db_pool_size: int = 4
    db_timeout_s: float = 5.0
    session_token_ttl_s: float = 24 * 3600.0
    typing_timeout_s: float = 2.0
    outbound_queue_size: int = 256
    enqueue_timeout_s: float = 0.25
    echo_to_sender: bool = True
    max_rooms_per_session: int = 32
    max_message_chars: int = 4000
    max_resource_bytes: int = 4 * 1024 * 1024
    resource_timeout_s: float = 30.0
    history_default_limit: int = 50
    history_max_limit: int = 200
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    idle_timeout_s: float = 0.0
    stats_log_interval_s: float = 0.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


# Tables whose keys are flattened onto HubRuntimeConfig fields as-is.
_FLAT_TABLES = ("hub", "store", "limits")

_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_EMPTY_IS_NONE = (
    "configdir",
    "database_path",
    "default_room",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay parsed TOML data onto ``base``.

    Unknown keys are ignored so a config file written for a newer release still
    loads.
    """
    if not isinstance(data, dict):
        return base

    for table in _FLAT_TABLES:
        sub = data.get(table)
        if isinstance(sub, dict):
            data = {**data, **sub}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped = {
            field: log_table.get(key)
            for key, field in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        try:
            updates["announce_on_start"] = bool(data["announce"])
        except Exception:
            pass

    for key in _EMPTY_IS_NONE:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def load_config_file(base: HubRuntimeConfig, path: str) -> HubRuntimeConfig:
    return apply_config_data(base, load_toml(path))
