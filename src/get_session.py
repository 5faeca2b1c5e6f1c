"""Interactive Telegram login for the promorelay user session.

`promorelay login` runs this once and prints a SESSION_STRING, so the
forwarder itself never has to prompt.
"""

from __future__ import annotations

import asyncio
import logging
import os
from getpass import getpass

import qrcode
from telethon import TelegramClient, errors
from telethon.sessions import StringSession

LOGGER = logging.getLogger(__name__)

LOGIN_METHODS = {"1": "qr", "2": "phone"}
QR_TIMEOUT_SECONDS = 120
QR_ATTEMPTS = 3
CODE_ATTEMPTS = 3


def _show_qr(url: str) -> None:
    code = qrcode.QRCode(border=1)
    code.add_data(url)
    code.make(fit=True)
    code.print_ascii(invert=True)
    print("Scan with Telegram: Settings > Devices > Link Desktop Device")


def _two_factor_password() -> str:
    return os.getenv("2FA") or getpass("2FA password: ")


async def _login_with_qr(client: TelegramClient) -> None:
    login = await client.qr_login()
    for attempt in range(1, QR_ATTEMPTS + 1):
        _show_qr(login.url)
        try:
            await login.wait(timeout=QR_TIMEOUT_SECONDS)
            return
        except asyncio.TimeoutError:
            if attempt == QR_ATTEMPTS:
                raise
            LOGGER.info("QR code expired, generating a new one (%s/%s)", attempt + 1, QR_ATTEMPTS)
            await login.recreate()


async def _login_with_phone(client: TelegramClient) -> None:
    phone = os.getenv("PHONE") or input("Phone number (international format): ").strip()
    await client.send_code_request(phone)
    for attempt in range(1, CODE_ATTEMPTS + 1):
        code = input("Login code: ").strip()
        try:
            await client.sign_in(phone=phone, code=code)
            return
        except errors.PhoneCodeInvalidError:
            if attempt == CODE_ATTEMPTS:
                raise
            print("Wrong code, try again.")


def _choose_method() -> str:
    configured = (os.getenv("LOGIN_METHOD") or "").strip().lower()
    if configured in LOGIN_METHODS.values():
        return configured

    menu = "\nLogin methods:\n[1] QR code\n[2] Phone code\n[3] Exit"
    while True:
        print(menu)
        choice = input("promorelay > ").strip()
        if choice == "3":
            raise SystemExit(0)
        if choice in LOGIN_METHODS:
            return LOGIN_METHODS[choice]
        print("Invalid option. Please choose 1, 2, or 3.")


async def authorize(client: TelegramClient) -> None:
    """Log the client in unless its session is already authorized."""

    if await client.is_user_authorized():
        return

    login = _login_with_phone if _choose_method() == "phone" else _login_with_qr
    try:
        await login(client)
    except errors.SessionPasswordNeededError:
        await client.sign_in(password=_two_factor_password())

    me = await client.get_me()
    LOGGER.info("Logged in as %s", getattr(me, "first_name", None) or getattr(me, "username", "unknown"))


def export_session_string(client: TelegramClient) -> str:
    """Return the session as a string suitable for SESSION_STRING in .env."""

    return StringSession.save(client.session)
