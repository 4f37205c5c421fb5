import asyncio
import logging
import os
import sys
import tomllib
from pathlib import Path

from api import Api, DEFAULT_TIMEOUT
from messaging import User
from messaging.attachments import ALLOWED_TYPES, MAX_ATTACHMENT_BYTES, AttachmentTransfer
from messaging.messenger import Messenger
from messaging.unread import POLL_INTERVAL

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
log = logging.getLogger(__name__)


def load_config() -> dict:
    config_path = Path(__file__).parent / "config.toml"
    if config_path.exists():
        return tomllib.loads(config_path.read_text())
    return {}


def build_messenger(config: dict, api: Api) -> Messenger:
    session = config.get("session", {})
    user = User(
        id=str(session.get("user_id", "")),
        first_name=session.get("first_name", ""),
        last_name=session.get("last_name", ""),
    )
    att_config = config.get("attachments", {})
    transfer = AttachmentTransfer(
        api,
        max_bytes=att_config.get("max_bytes", MAX_ATTACHMENT_BYTES),
        allowed_types=tuple(att_config.get("allowed_types", ALLOWED_TYPES)),
    )
    return Messenger(
        api, user,
        transfer=transfer,
        poll_interval=config.get("polling", {}).get("interval", POLL_INTERVAL),
    )


async def main():
    config = load_config()
    api_config = config.get("api", {})
    token = os.environ.get("COURIER_TOKEN") or api_config.get("token", "")
    if not token or not config.get("session", {}).get("user_id"):
        print("Set COURIER_TOKEN and [session] user_id in config.toml.")
        return

    async with Api(
        api_config.get("base_url", "http://localhost:5000/api"),
        token,
        timeout=api_config.get("timeout", DEFAULT_TIMEOUT),
    ) as api:
        messenger = build_messenger(config, api)
        messenger.start()
        log.info("Session started for %s", messenger.current_user.id)
        try:
            # Console page (auto-disabled when not a TTY, e.g. in Docker)
            if config.get("cli", {}).get("enabled", True) and sys.stdin.isatty():
                from surfaces.cli import interactive
                await interactive(messenger, config.get("attachments", {}).get("download_dir", "downloads"))
            else:
                from surfaces import launcher_badge

                def announce(badge):
                    log.info("Unread messages: %s", badge.count)

                messenger.broadcast.subscribe(launcher_badge(announce))
                await asyncio.Event().wait()
        finally:
            await messenger.stop()
            log.info("Session ended")


def main_cli():
    asyncio.run(main())


if __name__ == "__main__":
    main_cli()
