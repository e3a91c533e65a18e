"""Command-line interface for the bizmetrics identity service."""

from __future__ import annotations
import argparse
import base64
import logging
import sys
from functools import partial
from typing import Sequence

from bizmetrics.config import Settings, load_settings, open_key_ring
from bizmetrics.database import Database
from bizmetrics.encryption import KEY_LENGTH, generate_key
from bizmetrics.errors import EncryptionError, UserServiceError
from bizmetrics.keys import KeyRing, dump_key_ring
from bizmetrics.users import UserService

logger = logging.getLogger("bizmetrics.main")

_KNOWN_COMMANDS = {"serve", "init-db", "generate-key", "init-keys", "rotate-keys", "create-user"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="bizmetrics identity utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP user API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port for the API (default: 8000)")
    serve_parser.add_argument("--ssl-certfile", default=None, help="TLS certificate chain in PEM format")
    serve_parser.add_argument("--ssl-keyfile", default=None, help="TLS private key in PEM format")

    subparsers.add_parser("init-db", help="Initialise the user database")

    key_parser = subparsers.add_parser("generate-key", help="Print a new base64 encoded encryption key")
    key_parser.add_argument("--length", type=int, default=KEY_LENGTH, help="Key length in bytes")

    init_keys_parser = subparsers.add_parser("init-keys", help="Create the key ring file")
    init_keys_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing key ring (records encrypted under it become unreadable)",
    )

    subparsers.add_parser(
        "rotate-keys",
        help="Rotate the active key and re-encrypt every user under it",
    )

    create_parser = subparsers.add_parser("create-user", help="Register a user")
    create_parser.add_argument("email", help="Email address (stored encrypted)")
    create_parser.add_argument("external_id", help="External identity token (stored encrypted)")
    create_parser.add_argument("--name", default="", help="Display name")
    create_parser.add_argument("--role", default="USER", help="USER, ANALYST, ADMIN or SYSTEM")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in _KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _build_service(settings: Settings) -> UserService:
    return UserService(
        _initialise_database(settings),
        open_key_ring(settings.keyring_path),
        key_ring_store=partial(dump_key_ring, path=settings.keyring_path),
    )


def _serve(settings: Settings, *, host: str, port: int, ssl_certfile: str | None, ssl_keyfile: str | None) -> None:
    from bizmetrics.api import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting user API on %s://%s:%s", protocol, host, port)

    app = create_app(service=_build_service(settings))
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _init_keys(settings: Settings, *, force: bool) -> int:
    path = settings.keyring_path
    if path.exists() and not force:
        print(f"Key ring already exists at {path}; pass --force to replace it.", file=sys.stderr)
        return 1
    ring = KeyRing.generate()
    dump_key_ring(ring, path)
    print(f"Wrote key ring with active key {ring.active_key_id} to {path}")
    return 0


def _rotate_keys(settings: Settings) -> int:
    service = _build_service(settings)
    ring = service.key_ring
    previous = ring.key_ids()
    new_key_id = ring.rotate()
    # The new key must be on disk before any record is encrypted under it.
    dump_key_ring(ring, settings.keyring_path)

    database = Database(settings.database_path)
    failures = 0
    for user_id in database.list_user_ids():
        try:
            service.reencrypt_user(user_id)
        except (UserServiceError, EncryptionError) as exc:
            failures += 1
            logger.error("Failed to re-encrypt user %s: %s", user_id, exc)

    for key_id in previous:
        if database.count_users_by_key(key_id) == 0:
            ring.retire(key_id)
    dump_key_ring(ring, settings.keyring_path)

    print(f"Active key is now {new_key_id}; retained keys: {', '.join(ring.key_ids())}")
    return 1 if failures else 0


def _create_user(settings: Settings, args: argparse.Namespace) -> int:
    service = _build_service(settings)
    try:
        user = service.create_user(
            {"email": args.email, "external_id": args.external_id, "name": args.name, "role": args.role}
        )
    except (UserServiceError, EncryptionError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user {user.id}: {user.name or '<no name>'} <{user.email}> ({user.role.value})")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)
    settings = load_settings()

    if args.command == "serve":
        _serve(
            settings,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "init-db":
        _initialise_database(settings)
        print("Database initialisation complete.")
    elif args.command == "generate-key":
        try:
            key = generate_key(args.length)
        except EncryptionError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        print(base64.urlsafe_b64encode(key).decode("ascii"))
    elif args.command == "init-keys":
        return _init_keys(settings, force=args.force)
    elif args.command == "rotate-keys":
        return _rotate_keys(settings)
    elif args.command == "create-user":
        return _create_user(settings, args)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
