"""Mint a Telethon StringSession for the end-to-end tests.

Reads E2E_API_ID / E2E_API_HASH (and E2E_PHONE if set) from the environment and
prints the session string to put into E2E_SESSION.
"""

import getpass
import os

from telethon import TelegramClient
from telethon.sessions import StringSession


def ask_code() -> str:
    return input("Code (from Telegram): ").strip()


def ask_password() -> str:
    return getpass.getpass("2FA password (if enabled, else leave empty): ")


def main() -> None:
    api_id = os.getenv("E2E_API_ID")
    api_hash = os.getenv("E2E_API_HASH")
    if not api_id or not api_hash:
        raise SystemExit("Set E2E_API_ID and E2E_API_HASH (https://my.telegram.org)")
    phone = os.getenv("E2E_PHONE") or input("Phone (+963...): ").strip()

    with TelegramClient(StringSession(), int(api_id), api_hash) as client:
        # a user login: phone + code, never a bot token
        client.start(phone=lambda: phone, code_callback=ask_code, password=ask_password, bot_token=None)
        print("AUTHORIZED=", client.loop.run_until_complete(client.is_user_authorized()))
        print("E2E_SESSION=", client.session.save())


if __name__ == "__main__":
    main()
