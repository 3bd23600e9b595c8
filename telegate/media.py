"""Inbound media download.

Photos and documents are saved under the media directory so the agent can
open them by path. Names are ``<prefix>-<timestamp><ext>``; documents keep
their original extension.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from telegram import Bot

logger = logging.getLogger("telegate.media")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def media_filename(prefix: str, ext: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3]
    if ext and not ext.startswith("."):
        ext = "." + ext
    return f"{prefix}-{stamp}{ext}"


async def _download(bot: Bot, file_id: str, target: Path) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    tg_file = await bot.get_file(file_id)
    await tg_file.download_to_drive(custom_path=target)
    logger.info(f"Downloaded media to {target}")
    return target


async def download_photo(bot: Bot, file_id: str, media_dir: Path) -> Path:
    return await _download(bot, file_id, Path(media_dir) / media_filename("photo", ".jpg"))


def _safe_prefix(file_name: Optional[str]) -> str:
    stem = Path(file_name).stem if file_name else ""
    stem = _UNSAFE_CHARS.sub("_", stem).strip("._")
    return stem[:64] or "file"


async def download_document(bot: Bot, file_id: str, media_dir: Path, file_name: Optional[str] = None) -> Path:
    ext = Path(file_name).suffix if file_name else ""
    return await _download(bot, file_id, Path(media_dir) / media_filename(_safe_prefix(file_name), ext))
