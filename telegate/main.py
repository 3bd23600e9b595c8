"""Telegate: gateway process entry point."""

import asyncio
import logging
import sys
from pathlib import Path

from telegram.ext import Application

from .bridge import AgentBridge
from .communication.telegram import Dispatcher, TelegramGateway, make_typing_sender
from .config import GatewaySettings, load_settings
from .config_store import ConfigStore, DEFAULT_INTERNAL_PORT
from .history import HistoryStore
from .internal_api import InternalServer, create_internal_app, internal_token
from .typing_tracker import TypingTracker
from .user_cache import UserNameCache

_log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("telegate")


def setup_logging(log_file: Path, debug: bool = False) -> None:
    """Log to stderr and to a file in the data directory."""
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format=_log_format,
        handlers=[
            logging.StreamHandler(),                          # stderr (console)
            logging.FileHandler(log_file, encoding="utf-8"),  # <data_dir>/telegate.log
        ],
    )
    if debug:
        logging.getLogger("telegate").setLevel(logging.DEBUG)
    # PTB long polling logs every request otherwise
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_application(settings: GatewaySettings) -> Application:
    builder = Application.builder().token(settings.bot_token).concurrent_updates(64)
    if settings.proxy_url:
        builder = builder.proxy(settings.proxy_url).get_updates_proxy(settings.proxy_url)
    return builder.build()


async def run(settings: GatewaySettings) -> int:
    """Main run loop. Returns the process exit status."""
    if not settings.bot_token:
        logger.critical("No Telegram bot token configured. Set TELEGATE_BOT_TOKEN in the environment or .env.")
        return 1

    config_store = ConfigStore(settings.config_path)
    for note in config_store.migrate():
        logger.info(f"Config migration: {note}")
    config = config_store.load()
    context_messages = (config.get("message") or {}).get("context_messages") or 5
    internal_port = int(config.get("internal_port") or DEFAULT_INTERNAL_PORT)

    app = build_application(settings)
    names = UserNameCache(settings.user_cache_path)
    names.load()
    history = HistoryStore(settings.logs_dir, default_limit=context_messages)
    typing = TypingTracker(make_typing_sender(app.bot), settings.typing_dir)
    bridge = AgentBridge(settings.agent_executable, settings.agent_channel, timeout=settings.agent_timeout)
    dispatcher = Dispatcher(app.bot, config_store, history, bridge, typing, names, settings.media_dir)
    gateway = TelegramGateway(app, dispatcher)
    internal = InternalServer(
        create_internal_app(internal_token(settings.bot_token), dispatcher.record_outgoing),
        port=internal_port,
    )
    persist_task = None
    started = False

    try:
        await gateway.start()
        started = True
        await internal.start()
        await typing.run()
        persist_task = asyncio.create_task(names.run_persist_loop(), name="user-cache-persist")

        logger.info(f"Telegate is running (agent: {settings.agent_executable}). Press Ctrl+C to stop.")
        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.critical(f"Fatal error: {type(e).__name__}: {e}", exc_info=True)
        return 1
    finally:
        if persist_task:
            persist_task.cancel()
        names.persist()
        await typing.stop()
        await internal.stop()
        if started:
            await gateway.stop()
    return 0


def main(debug: bool = False) -> int:
    """Entry point."""
    settings = load_settings()
    setup_logging(settings.log_file, debug=debug)
    try:
        return asyncio.run(run(settings))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
