"""Telegate environment settings."""

import logging
import os
import stat
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger("telegate.config")


class GatewaySettings(BaseSettings):
    """Settings loaded from environment variables or .env file."""

    # Telegram
    bot_token: Optional[str] = Field(default=None, description="Telegram bot token")
    proxy_url: Optional[str] = Field(default=None, description="HTTP proxy for Telegram API calls")

    # Storage
    data_dir: Path = Field(default=Path("~/.telegate"), description="Runtime data directory")

    # Agent bridge
    agent_command: str = Field(
        default="~/.claude/skills/comm-bridge/c4-receive",
        description="Executable that hands a message to the agent",
    )
    agent_channel: str = Field(default="telegram", description="Channel name passed to the bridge")
    agent_timeout: float = Field(default=60.0, description="Seconds before a bridge call is abandoned")

    # Outbound
    max_message_length: int = Field(default=4000, description="Chunk size for outgoing text")

    model_config = {"env_prefix": "TELEGATE_", "env_file": ".env", "extra": "ignore"}

    @property
    def root(self) -> Path:
        return self.data_dir.expanduser()

    @property
    def config_path(self) -> Path:
        return self.root / "config.json"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def media_dir(self) -> Path:
        return self.root / "media"

    @property
    def typing_dir(self) -> Path:
        return self.root / "typing"

    @property
    def user_cache_path(self) -> Path:
        return self.root / "user-cache.json"

    @property
    def log_file(self) -> Path:
        return self.root / "telegate.log"

    @property
    def agent_executable(self) -> str:
        return os.path.expanduser(self.agent_command)


def load_settings() -> GatewaySettings:
    """Load settings from environment."""
    settings = GatewaySettings()

    # Config and logs hold the owner binding and chat transcripts
    root = settings.root
    if root.exists():
        mode = root.stat().st_mode
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            logger.warning(
                f"Data directory {root} is accessible by other users, so "
                "chat logs and the owner binding may be readable. Consider chmod 700."
            )

    return settings
