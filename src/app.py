"""Application entry point for the promorelay forwarder."""

from __future__ import annotations

import argparse
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_client import TelethonSourceClient
from client import build_client
from core.errors import MalformedConfigError
from core.processor import IngestionOrchestrator
from get_session import authorize, export_session_string

NAME = "PROMORELAY"
FONT = "tarty-1"

DEFAULT_TEST_MESSAGE = "Test message - promorelay is running"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_REDACTED_ENV = ("API_HASH", "SESSION_STRING", "2FA")
MASK = "***"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    """Mask secret values (API hash, session string, 2FA) in every record."""

    def __init__(self, secrets: list[str]) -> None:
        super().__init__(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
        # Longest first, so a secret containing another is masked whole.
        self._secrets = sorted({secret for secret in secrets if secret}, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        for secret in self._secrets:
            rendered = rendered.replace(secret, MASK)
        return rendered


def _secrets_to_redact(redact: dict) -> list[str]:
    if not redact.get("enabled", True):
        return []
    return [os.getenv(name, "") for name in redact.get("patterns", DEFAULT_REDACTED_ENV)]


def _file_handler(file_cfg: dict) -> RotatingFileHandler:
    path = file_cfg.get("path", "logs/promorelay.log")
    if not os.path.isabs(path):
        path = os.path.join(settings.PROJECT_ROOT, path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    return RotatingFileHandler(
        path,
        maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
        backupCount=int(file_cfg.get("backup_count", 5)),
        encoding="utf-8",
    )


def _configure_logging() -> None:
    config = settings.load_logging_config()
    if not config.get("enabled", True):
        return

    # Secret values come from .env.
    load_dotenv()
    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    formatter = _RedactingFormatter(_secrets_to_redact(config.get("redact", {})))

    handlers: list[logging.Handler] = []
    if config.get("console", True):
        handlers.append(logging.StreamHandler())
    if config.get("file", {}).get("enabled", False):
        handlers.append(_file_handler(config["file"]))
    if not handlers:
        return

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers)
    # Telethon logs its own reconnects at INFO.
    logging.getLogger("telethon").setLevel(max(level, logging.WARNING))


def _build_orchestrator() -> tuple[Any, TelethonSourceClient, IngestionOrchestrator]:
    try:
        config = settings.JsonConfigProvider(settings.CONFIG_PATH)
    except (FileNotFoundError, MalformedConfigError) as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()

    client = build_client()
    source = TelethonSourceClient(client)
    return client, source, IngestionOrchestrator(source, storage, config)


def _run() -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting promorelay")

    client, source, orchestrator = _build_orchestrator()
    loop = client.loop

    try:
        loop.run_until_complete(client.connect())
        loop.run_until_complete(authorize(client))
        # The first connection is fatal on failure; later drops are retried
        # by the live listener's reconnect loop.
        loop.run_until_complete(orchestrator.start())
        logger.info("Running. Press Ctrl+C to stop")
        loop.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception:
        logger.exception("Failed to start promorelay")
        raise SystemExit(1)
    finally:
        loop.run_until_complete(orchestrator.stop())
        loop.run_until_complete(source.disconnect())
        logger.info("promorelay stopped")


def _login() -> None:
    _print_banner()
    client = build_client()

    async def _run_login() -> None:
        await client.connect()
        await authorize(client)
        print("")
        print("Add this line to .env to reuse the session:")
        print(f"SESSION_STRING={export_session_string(client)}")
        await client.disconnect()

    client.loop.run_until_complete(_run_login())


def _dialog_type(dialog: Any) -> str:
    if getattr(dialog, "is_channel", False):
        entity = getattr(dialog, "entity", None)
        if getattr(entity, "megagroup", False):
            return "group"
        return "channel"
    if getattr(dialog, "is_group", False):
        return "group"
    return "chat"


async def _list_dialogs(client) -> None:
    # Config entries are keyed by username.
    dialogs = []
    async for dialog in client.iter_dialogs():
        if dialog.is_user:
            continue
        if not getattr(dialog.entity, "username", None):
            continue
        dialogs.append(dialog)

    if not dialogs:
        print("No channels or groups with a username found.")
        return

    for index, dialog in enumerate(dialogs, start=1):
        print(f"{index}. {_dialog_type(dialog)} | {dialog.name} | @{dialog.entity.username}")


def _discover() -> None:
    _print_banner()
    client = build_client()

    async def _run_discover() -> None:
        await client.connect()
        if not await client.is_user_authorized():
            print("Authorization required. Starting login...")
            await authorize(client)
        await _list_dialogs(client)
        await client.disconnect()

    client.loop.run_until_complete(_run_discover())


def _send_latest() -> None:
    _configure_logging()
    client, source, orchestrator = _build_orchestrator()

    async def _run_send_latest() -> None:
        await source.connect()
        try:
            if await orchestrator.send_latest():
                while len(orchestrator.queue):
                    await orchestrator.queue.drain()
        finally:
            await orchestrator.queue.stop()
            await source.disconnect()

    client.loop.run_until_complete(_run_send_latest())


def _test_send(destination_id: str, text: str) -> None:
    _configure_logging()
    client, source, orchestrator = _build_orchestrator()

    async def _run_test_send() -> None:
        await source.connect()
        try:
            await orchestrator.queue.send_test_message(destination_id, text)
        finally:
            await source.disconnect()

    client.loop.run_until_complete(_run_test_send())


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="promorelay")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start scanning, listening and forwarding")
    subparsers.add_parser("login", help="Log in and print a SESSION_STRING for .env")
    subparsers.add_parser("discover", help="List joined channels and groups with their usernames")
    subparsers.add_parser("send-latest", help="Forward the newest stored promo again")
    test_send = subparsers.add_parser("test-send", help="Send a test message to one destination")
    test_send.add_argument("destination_id")
    test_send.add_argument("--text", default=DEFAULT_TEST_MESSAGE)

    args = parser.parse_args(argv)
    if args.command == "login":
        _login()
        return
    if args.command == "discover":
        _discover()
        return
    if args.command == "send-latest":
        _send_latest()
        return
    if args.command == "test-send":
        _test_send(args.destination_id, args.text)
        return
    _run()


if __name__ == "__main__":
    main()
