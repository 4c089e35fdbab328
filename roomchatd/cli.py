from __future__ import annotations

import argparse
import getpass
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .auth import StoreAuthService
from .config import HubRuntimeConfig, load_config_file
from .constants import ROLE_ADMIN, ROLE_MEMBER
from .errors import ChatError
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_database_path,
    default_identity_path,
    ensure_private_dir,
)
from .service import HubService
from .store import SqliteMessageStore
from .util import expand_path


def _write_default_config(config_path: str, identity_path: str, database_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    storage_dir = os.path.dirname(identity_path)
    if storage_dir:
        ensure_private_dir(Path(storage_dir))

    content = f"""# roomchatd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start roomchatd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where roomchatd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Destination name to host the hub on.
dest_name = "roomchat.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = "roomchat"

# Room every newly registered user is added to. Created on startup if missing.
# Leave empty to disable.
default_room = "Fun Friday Group"

# Echo new messages back to the connection that sent them.
echo_to_sender = true

# Typing indicators expire after this many seconds without a refresh.
typing_timeout_s = 2.0

# Session tokens returned in AUTH_OK stay valid this long.
session_token_ttl_s = {24 * 3600}

# Hub-initiated liveness checks (0 disables).
ping_interval_s = 0.0
ping_timeout_s = 0.0
idle_timeout_s = 0.0

# Log a statistics report this often (0 disables).
stats_log_interval_s = 0.0

[store]

database_path = {database_path!r}
db_pool_size = 4
db_timeout_s = 5.0

[limits]

max_rooms_per_session = 32
max_message_chars = 4000
history_default_limit = 50
history_max_limit = 200
rate_limit_msgs_per_minute = 240

# Per-connection outbound queue. Typing and presence events are evicted first
# when it fills up; a connection that cannot take a chat message within
# enqueue_timeout_s is disconnected.
outbound_queue_size = 256
enqueue_timeout_s = 0.25

# Payloads larger than the link MTU are sent as RNS.Resource transfers.
max_resource_bytes = {4 * 1024 * 1024}
resource_timeout_s = 30.0

[logging]

# Log level for roomchatd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str, database_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, database_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="roomchatd", description="Run a multi-room chat hub over Reticulum"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--database",
        default=None,
        help=f"Path to the SQLite database (default: {default_database_path()})",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: roomchat.hub)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in announces")

    p.add_argument(
        "--typing-timeout",
        type=float,
        default=None,
        help="Seconds before a typing indicator expires",
    )
    p.add_argument(
        "--no-echo",
        action="store_true",
        help="Do not echo new messages back to the sending connection",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )
    p.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Close links that send nothing for this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    admin = p.add_argument_group("administration (run once and exit)")
    admin.add_argument(
        "--add-user",
        metavar="USERNAME",
        default=None,
        help="Register a user (password from ROOMCHATD_PASSWORD or prompt)",
    )
    admin.add_argument("--display-name", default=None, help="Display name for --add-user")
    admin.add_argument("--email", default=None, help="Email for --add-user")
    admin.add_argument(
        "--create-room",
        metavar="NAME",
        default=None,
        help="Create a room and print its id",
    )
    admin.add_argument(
        "--add-member",
        nargs=2,
        metavar=("ROOM_ID", "USERNAME"),
        default=None,
        help="Add an existing user to a room",
    )
    admin.add_argument(
        "--admin",
        action="store_true",
        help="With --add-member, grant the admin role",
    )
    admin.add_argument(
        "--owner",
        metavar="USERNAME",
        default=None,
        help="With --create-room, record and add this user as the creator",
    )
    admin.add_argument(
        "--private",
        action="store_true",
        help="With --create-room, hide the room from public joins",
    )

    return p


def _run_admin(args: argparse.Namespace, cfg: HubRuntimeConfig) -> int:
    """Run the one-shot administration flags against the database."""
    path = expand_path(cfg.database_path or str(default_database_path()))
    db_dir = os.path.dirname(path)
    if db_dir:
        ensure_private_dir(Path(db_dir))

    store = SqliteMessageStore(path, pool_size=1, timeout_s=float(cfg.db_timeout_s))
    auth = StoreAuthService(store, token_ttl_s=float(cfg.session_token_ttl_s))
    try:
        if args.add_user:
            password = os.environ.get("ROOMCHATD_PASSWORD") or getpass.getpass(
                f"Password for {args.add_user}: "
            )
            default_room_id = None
            if cfg.default_room:
                default_room_id = store.ensure_room(
                    cfg.default_room, description="Default group chat for everyone"
                ).id
            user = auth.register(
                args.add_user,
                password,
                display_name=args.display_name,
                email=args.email,
                default_room_id=default_room_id,
            )
            print(f"user {user.id} {user.username}")

        if args.create_room:
            owner = None
            if args.owner:
                owner = store.get_user_by_username(args.owner)
                if owner is None:
                    print(f"no such user: {args.owner}", file=sys.stderr)
                    return 1
            room = store.create_room(
                args.create_room,
                created_by=owner.id if owner is not None else None,
                is_private=args.private,
            )
            if owner is not None:
                store.add_member(room.id, owner.id, ROLE_ADMIN)
            print(f"room {room.id} {room.name}")

        if args.add_member:
            room_s, username = args.add_member
            user = store.get_user_by_username(username)
            if user is None:
                print(f"no such user: {username}", file=sys.stderr)
                return 1
            valid = room_s.isascii() and room_s.isdigit()
            if not valid or store.get_room(int(room_s)) is None:
                print(f"no such room: {room_s}", file=sys.stderr)
                return 1
            store.add_member(int(room_s), user.id, ROLE_ADMIN if args.admin else ROLE_MEMBER)
            print(f"member {room_s} {user.username}")
    except ChatError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1
    finally:
        store.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    database_path = str(args.database or default_database_path())
    admin_mode = bool(args.add_user or args.create_room or args.add_member)

    if _ensure_first_run_files(config_path, identity_path, database_path) and not admin_mode:
        print(
            "Created default roomchatd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run roomchatd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = HubRuntimeConfig(configdir=args.configdir, identity_path=identity_path)
    cfg = replace(cfg, config_path=config_path)

    if config_path:
        cfg = load_config_file(cfg, config_path)

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.database is not None:
        cfg = replace(cfg, database_path=str(args.database))
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)

    if args.typing_timeout is not None:
        cfg = replace(cfg, typing_timeout_s=float(args.typing_timeout))
    if args.no_echo:
        cfg = replace(cfg, echo_to_sender=False)
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))
    if args.idle_timeout is not None:
        cfg = replace(cfg, idle_timeout_s=float(args.idle_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if admin_mode:
        raise SystemExit(_run_admin(args, cfg))

    if not cfg.database_path:
        cfg = replace(cfg, database_path=database_path)
    db_dir = os.path.dirname(expand_path(cfg.database_path))
    if db_dir:
        ensure_private_dir(Path(db_dir))

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
