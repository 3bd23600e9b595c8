"""Telegate: Telegram gateway between chats and a local agent process."""

__version__ = "0.3.0"
