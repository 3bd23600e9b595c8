"""Reply delivery command, invoked by the agent."""

import asyncio
import logging

import click
from telegram import Bot
from telegram.error import TelegramError

from . import cli
from .shared import _get_store, console


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("endpoint")
@click.argument("message")
def send(endpoint, message):
    """Send MESSAGE to the chat addressed by ENDPOINT.

    MESSAGE may be plain text, [SKIP], [MEDIA:image]<path> or [MEDIA:file]<path>.
    """
    from telegate.config import load_settings
    from telegate.config_store import DEFAULT_INTERNAL_PORT
    from telegate.reply import ReplyError, deliver_reply

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    settings = load_settings()
    if not settings.bot_token:
        raise click.ClickException("TELEGATE_BOT_TOKEN is not set")
    config = _get_store().load()

    async def _send():
        bot = Bot(settings.bot_token)
        async with bot:
            return await deliver_reply(
                bot,
                endpoint,
                message,
                bot_token=settings.bot_token,
                typing_dir=settings.typing_dir,
                internal_port=int(config.get("internal_port") or DEFAULT_INTERNAL_PORT),
                max_length=settings.max_message_length,
            )

    try:
        kind = asyncio.run(_send())
    except ReplyError as e:
        raise click.ClickException(str(e))
    except TelegramError as e:
        raise click.ClickException(f"Telegram API error: {e}")

    if kind != "skip":
        console.print(f"[green]✓ Sent ({kind})[/green]")
