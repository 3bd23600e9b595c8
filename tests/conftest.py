"""Pytest configuration and shared fixtures."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from telegate.communication.inbound import ChatRef, Sender, TextMessage
from telegate.config_store import ConfigStore, default_config
from telegate.history import HistoryStore

OWNER_ID = "1001"
BOT_ID = "9999"


@pytest.fixture
def config():
    """Fresh default config document."""
    return default_config()


@pytest.fixture
def owned_config(config):
    """Config with an owner already bound."""
    config["owner"] = {"id": OWNER_ID, "display_name": "alice", "bound_at": "2024-01-01T00:00:00+00:00"}
    config["whitelist"]["ids"] = [OWNER_ID]
    return config


@pytest.fixture
def store(tmp_path):
    return ConfigStore(tmp_path / "config.json")


@pytest.fixture
def history(tmp_path):
    return HistoryStore(tmp_path / "logs", default_limit=5)


@pytest.fixture
def bot():
    """Stand-in for telegram.Bot with every used call mocked."""
    b = MagicMock()
    b.send_message = AsyncMock()
    b.send_photo = AsyncMock()
    b.send_document = AsyncMock()
    b.send_chat_action = AsyncMock()
    b.set_message_reaction = AsyncMock()
    b.get_file = AsyncMock()
    return b


def make_sender(user_id=OWNER_ID, username="alice", first_name="Alice", is_bot=False):
    return Sender(id=user_id, username=username, first_name=first_name, is_bot=is_bot)


def private_text(text, sender=None, message_id="10"):
    sender = sender or make_sender()
    return TextMessage(
        chat=ChatRef(id=sender.id, type="private"),
        sender=sender,
        message_id=message_id,
        text=text,
    )


def group_text(text, chat_id="-100200", sender=None, message_id="20", title="Team", **kwargs):
    return TextMessage(
        chat=ChatRef(id=chat_id, type="supergroup", title=title),
        sender=sender or make_sender(),
        message_id=message_id,
        text=text,
        **kwargs,
    )
