"""Tests for the Dispatcher: authorization, history, forwarding and membership."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import NetworkError

import telegate.communication.telegram as telegram_mod
from telegate.bridge import AgentBridgeError, AgentRejection
from telegate.communication.inbound import (
    ChatMemberStatusChanged,
    ChatRef,
    MemberAdded,
    PhotoMessage,
    ReplyRef,
)
from telegate.communication.telegram import (
    FORWARD_REACTION,
    MEDIA_DISABLED_REPLY,
    OWNER_BOUND_REPLY,
    PHOTO_FAILED_REPLY,
    PRIVATE_DENIED_REPLY,
    READY_REPLY,
    Dispatcher,
)
from telegate.security import add_group
from telegate.user_cache import UserNameCache

from conftest import BOT_ID, OWNER_ID, group_text, make_sender, private_text

BOT_USERNAME = "telegate_bot"


@pytest.fixture
def dispatcher(bot, store, history, tmp_path):
    bridge = MagicMock()
    bridge.forward = AsyncMock()
    d = Dispatcher(
        bot=bot,
        config_store=store,
        history=history,
        bridge=bridge,
        typing=MagicMock(),
        names=UserNameCache(tmp_path / "names.json"),
        media_dir=tmp_path / "media",
    )
    d.set_identity(int(BOT_ID), BOT_USERNAME)
    return d


def _replies(bot):
    return [c.kwargs["text"] for c in bot.send_message.await_args_list]


def _forwarded(dispatcher):
    return [c.args for c in dispatcher.bridge.forward.await_args_list]


STRANGER = make_sender("2002", "mallory", "Mallory")


# ── Private chats ────────────────────────────────────────────

class TestPrivate:

    @pytest.mark.asyncio
    async def test_first_dm_binds_owner(self, dispatcher, store, bot):
        await dispatcher.handle_event(private_text("hello"))

        config = store.load()
        assert config["owner"]["id"] == OWNER_ID
        assert OWNER_ID in config["whitelist"]["ids"]
        assert _replies(bot) == [OWNER_BOUND_REPLY]
        endpoint, content = _forwarded(dispatcher)[0]
        assert endpoint == f"{OWNER_ID}|msg:10|req:{OWNER_ID}:10"
        assert content.startswith("[TG DM] alice said: ")

    @pytest.mark.asyncio
    async def test_unauthorized_dm_denied(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        await dispatcher.handle_event(private_text("let me in", sender=STRANGER))

        assert _replies(bot) == [PRIVATE_DENIED_REPLY]
        dispatcher.bridge.forward.assert_not_awaited()
        assert dispatcher.history.get_recent_history("2002") == []

    @pytest.mark.asyncio
    async def test_whitelisted_username(self, dispatcher, store, owned_config):
        owned_config["whitelist"]["names"] = ["mallory"]
        store.save(owned_config)
        await dispatcher.handle_event(private_text("hi", sender=STRANGER))
        dispatcher.bridge.forward.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reaction_and_typing_on_forward(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        await dispatcher.handle_event(private_text("hi"))

        reaction = bot.set_message_reaction.await_args.kwargs
        assert reaction["message_id"] == 10
        assert reaction["reaction"][0].emoji == FORWARD_REACTION
        dispatcher.typing.start.assert_called_once_with(f"{OWNER_ID}:10", OWNER_ID, None)
        dispatcher.typing.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_gateway_ignores_everything(self, dispatcher, store, owned_config, bot):
        owned_config["enabled"] = False
        store.save(owned_config)
        await dispatcher.handle_event(private_text("hi"))
        await dispatcher.handle_start(private_text("/start"))
        bot.send_message.assert_not_awaited()
        dispatcher.bridge.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_forwarded_once(self, dispatcher, store, owned_config):
        store.save(owned_config)
        await dispatcher.handle_event(private_text("hi", message_id="10"))
        await dispatcher.handle_event(private_text("hi", message_id="10"))
        assert dispatcher.bridge.forward.await_count == 1


# ── /start ───────────────────────────────────────────────────

class TestStart:

    @pytest.mark.asyncio
    async def test_binds_owner(self, dispatcher, store, bot):
        await dispatcher.handle_start(private_text("/start"))
        assert store.load()["owner"]["id"] == OWNER_ID
        assert _replies(bot) == [OWNER_BOUND_REPLY]
        dispatcher.bridge.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ready_for_authorized(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        await dispatcher.handle_start(private_text("/start"))
        assert _replies(bot) == [READY_REPLY]

    @pytest.mark.asyncio
    async def test_denied_for_stranger(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        await dispatcher.handle_start(private_text("/start", sender=STRANGER))
        assert _replies(bot) == [PRIVATE_DENIED_REPLY]

    @pytest.mark.asyncio
    async def test_ignored_in_groups(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        await dispatcher.handle_start(group_text("/start"))
        bot.send_message.assert_not_awaited()


# ── Groups ───────────────────────────────────────────────────

class TestGroups:

    @pytest.mark.asyncio
    async def test_allowlist_unknown_group_silent(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        await dispatcher.handle_event(group_text(f"@{BOT_USERNAME} hi", sender=STRANGER))

        dispatcher.bridge.forward.assert_not_awaited()
        bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_owner_bypasses_allowlist(self, dispatcher, store, owned_config):
        store.save(owned_config)
        await dispatcher.handle_event(group_text(f"@{BOT_USERNAME} hi"))
        dispatcher.bridge.forward.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disabled_policy_blocks_owner(self, dispatcher, store, owned_config):
        owned_config["group_policy"] = "disabled"
        store.save(owned_config)
        await dispatcher.handle_event(group_text(f"@{BOT_USERNAME} hi"))
        dispatcher.bridge.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sender_filter(self, dispatcher, store, owned_config):
        add_group(owned_config, "-100200", "Team", mode="broadcast", allow_from=["3003"])
        store.save(owned_config)
        await dispatcher.handle_event(group_text("hi", sender=STRANGER))
        dispatcher.bridge.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mention_mode_records_then_forwards_with_context(self, dispatcher, store, owned_config):
        add_group(owned_config, "-100200", "Team", mode="mention")
        store.save(owned_config)

        await dispatcher.handle_event(group_text("lunch at noon?", sender=STRANGER, message_id="20"))
        dispatcher.bridge.forward.assert_not_awaited()

        await dispatcher.handle_event(group_text(f"@{BOT_USERNAME} what did mallory ask?", message_id="21"))
        endpoint, content = _forwarded(dispatcher)[0]
        assert endpoint == "-100200|msg:21|req:-100200:21"
        assert content.startswith("[TG GROUP:Team] alice said: <chat-context>\n[mallory]: lunch at noon?\n</chat-context>")
        assert "<current-message>\nwhat did mallory ask?\n</current-message>" in content
        # History keeps the message as written
        last = dispatcher.history.get_recent_history("-100200")[-1]
        assert last.text == f"@{BOT_USERNAME} what did mallory ask?"

    @pytest.mark.asyncio
    async def test_mention_case_insensitive(self, dispatcher, store, owned_config):
        add_group(owned_config, "-100200", "Team")
        store.save(owned_config)
        await dispatcher.handle_event(group_text("hey @TELEGATE_BOT", sender=STRANGER))
        dispatcher.bridge.forward.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reply_to_bot_counts_as_mention(self, dispatcher, store, owned_config):
        add_group(owned_config, "-100200", "Team")
        store.save(owned_config)
        reply = ReplyRef(message_id="5", sender_name="Telegate", text="done!", sender_id=BOT_ID)
        await dispatcher.handle_event(group_text("thanks, one more", sender=STRANGER, reply_to=reply))

        _, content = _forwarded(dispatcher)[0]
        assert "<replying-to>\n[Telegate]: done!\n</replying-to>" in content

    @pytest.mark.asyncio
    async def test_reply_to_other_user_is_not_mention(self, dispatcher, store, owned_config):
        add_group(owned_config, "-100200", "Team")
        store.save(owned_config)
        reply = ReplyRef(message_id="5", sender_name="bob", text="hi", sender_id="4004")
        await dispatcher.handle_event(group_text("agreed", sender=STRANGER, reply_to=reply))
        dispatcher.bridge.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reply_to_another_bot_is_not_mention(self, dispatcher, store, owned_config):
        add_group(owned_config, "-100200", "Team")
        store.save(owned_config)
        reply = ReplyRef(message_id="5", sender_name="OtherBot", text="poll closed", sender_id="7777")
        await dispatcher.handle_event(group_text("nice", sender=STRANGER, reply_to=reply))
        dispatcher.bridge.forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_broadcast_forwards_everything(self, dispatcher, store, owned_config):
        add_group(owned_config, "-100200", "Team", mode="broadcast")
        store.save(owned_config)
        await dispatcher.handle_event(group_text("first", sender=STRANGER, message_id="1"))
        await dispatcher.handle_event(group_text("second", sender=STRANGER, message_id="2"))
        assert dispatcher.bridge.forward.await_count == 2

    @pytest.mark.asyncio
    async def test_forum_topic_endpoint_and_history(self, dispatcher, store, owned_config, bot):
        add_group(owned_config, "-100200", "Team", mode="broadcast")
        store.save(owned_config)
        await dispatcher.handle_event(group_text("in topic", thread_id="7"))

        endpoint, _ = _forwarded(dispatcher)[0]
        assert endpoint == "-100200|msg:20|req:-100200:20|thread:7"
        assert len(dispatcher.history.get_recent_history("-100200:7")) == 1
        assert dispatcher.history.get_recent_history("-100200") == []

    @pytest.mark.asyncio
    async def test_open_policy_unknown_group(self, dispatcher, store, owned_config):
        owned_config["group_policy"] = "open"
        store.save(owned_config)
        await dispatcher.handle_event(group_text(f"@{BOT_USERNAME} hi", sender=STRANGER))
        dispatcher.bridge.forward.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_channel_ignored(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        event = private_text("hi")
        event = type(event)(chat=ChatRef(id="-100999", type="channel"), sender=event.sender, message_id="1", text="hi")
        await dispatcher.handle_event(event)
        dispatcher.bridge.forward.assert_not_awaited()


# ── Bridge failures ──────────────────────────────────────────

class TestBridgeFailures:

    @pytest.mark.asyncio
    async def test_structured_rejection_relayed(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        dispatcher.bridge.forward.side_effect = AgentRejection("RATE_LIMIT", "slow down")

        await dispatcher.handle_event(private_text("hi"))

        assert _replies(bot) == ["slow down"]
        assert dispatcher.bridge.forward.await_count == 1
        dispatcher.typing.complete.assert_called_once_with(f"{OWNER_ID}:10")
        assert bot.set_message_reaction.await_args.kwargs["reaction"] == []

    @pytest.mark.asyncio
    async def test_rejection_truncated(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        dispatcher.bridge.forward.side_effect = AgentRejection("X", "z" * 2000)
        await dispatcher.handle_event(private_text("hi"))
        assert _replies(bot) == ["z" * 500]

    @pytest.mark.asyncio
    async def test_bridge_crash_notice(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        dispatcher.bridge.forward.side_effect = AgentBridgeError("exit 1", returncode=1)

        await dispatcher.handle_event(private_text("hi"))

        assert "not reachable" in _replies(bot)[0]
        dispatcher.typing.complete.assert_called_once_with(f"{OWNER_ID}:10")

    @pytest.mark.asyncio
    async def test_reply_failure_is_logged_not_raised(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        dispatcher.bridge.forward.side_effect = AgentRejection("X", "no")
        bot.send_message.side_effect = NetworkError("down")
        await dispatcher.handle_event(private_text("hi"))


# ── Media ────────────────────────────────────────────────────

def _photo(caption=None):
    return PhotoMessage(
        chat=ChatRef(id=OWNER_ID, type="private"),
        sender=make_sender(),
        message_id="30",
        file_id="file-30",
        caption=caption,
    )


class TestMedia:

    @pytest.mark.asyncio
    async def test_photo_downloaded_and_referenced(self, dispatcher, store, owned_config, monkeypatch):
        store.save(owned_config)
        download = AsyncMock(return_value=Path("/data/media/photo-1.jpg"))
        monkeypatch.setattr(telegram_mod, "download_photo", download)

        await dispatcher.handle_event(_photo(caption="look"))

        download.assert_awaited_once()
        _, content = _forwarded(dispatcher)[0]
        assert "<current-message>\nlook\n</current-message> ---- file: /data/media/photo-1.jpg" in content

    @pytest.mark.asyncio
    async def test_download_disabled_replies_without_forwarding(self, dispatcher, store, owned_config, bot, monkeypatch):
        owned_config["features"]["download_media"] = False
        store.save(owned_config)
        download = AsyncMock()
        monkeypatch.setattr(telegram_mod, "download_photo", download)

        await dispatcher.handle_event(_photo())

        download.assert_not_awaited()
        dispatcher.bridge.forward.assert_not_awaited()
        assert _replies(bot) == [MEDIA_DISABLED_REPLY]
        assert [e.text for e in dispatcher.history.get_recent_history(OWNER_ID)] == ["[sent a photo]"]

    @pytest.mark.asyncio
    async def test_download_failure_notifies(self, dispatcher, store, owned_config, bot, monkeypatch):
        store.save(owned_config)
        monkeypatch.setattr(telegram_mod, "download_photo", AsyncMock(side_effect=NetworkError("gone")))

        await dispatcher.handle_event(_photo())

        assert _replies(bot) == [PHOTO_FAILED_REPLY]
        dispatcher.bridge.forward.assert_not_awaited()


# ── Outgoing record ──────────────────────────────────────────

class TestRecordOutgoing:

    @pytest.mark.asyncio
    async def test_bot_message_joins_history(self, dispatcher, store, owned_config):
        add_group(owned_config, "-100200", "Team", mode="broadcast")
        store.save(owned_config)

        await dispatcher.record_outgoing("-100200", None, "here you go")
        await dispatcher.handle_event(group_text("thanks", sender=STRANGER))

        _, content = _forwarded(dispatcher)[0]
        assert f"[{BOT_USERNAME}]: here you go" in content

    @pytest.mark.asyncio
    async def test_entries_not_deduplicated(self, dispatcher):
        await dispatcher.record_outgoing("1001", None, "same")
        await dispatcher.record_outgoing("1001", None, "same")
        entries = dispatcher.history.get_recent_history("1001")
        assert [e.text for e in entries] == ["same", "same"]
        assert all(e.sender_id == BOT_ID for e in entries)


# ── Membership ───────────────────────────────────────────────

class TestMembership:

    def _bot_member(self):
        return make_sender(BOT_ID, BOT_USERNAME, "Telegate", is_bot=True)

    @pytest.mark.asyncio
    async def test_owner_adds_bot_enables_mention_mode(self, dispatcher, store, owned_config):
        store.save(owned_config)
        event = MemberAdded(
            chat=ChatRef(id="-100300", type="supergroup", title="Ops"),
            added_by=make_sender(),
            members=(self._bot_member(),),
        )
        await dispatcher.handle_event(event)

        group = store.load()["groups"]["-100300"]
        assert group["mode"] == "mention"
        assert group["name"] == "Ops"

    @pytest.mark.asyncio
    async def test_stranger_adds_bot_owner_notified_once(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        chat = ChatRef(id="-100300", type="supergroup", title="Ops")
        added = MemberAdded(chat=chat, added_by=STRANGER, members=(self._bot_member(),))
        status = ChatMemberStatusChanged(chat=chat, changed_by=STRANGER, old_status="left", new_status="member")

        await dispatcher.handle_event(added)
        await dispatcher.handle_event(status)

        assert "-100300" not in store.load()["groups"]
        assert bot.send_message.await_count == 1
        notice = bot.send_message.await_args.kwargs
        assert notice["chat_id"] == OWNER_ID
        assert 'telegate admin add-group -100300 "Ops"' in notice["text"]

    @pytest.mark.asyncio
    async def test_other_members_ignored(self, dispatcher, store, owned_config, bot):
        store.save(owned_config)
        event = MemberAdded(
            chat=ChatRef(id="-100300", type="supergroup", title="Ops"),
            added_by=make_sender(),
            members=(STRANGER,),
        )
        await dispatcher.handle_event(event)
        assert store.load()["groups"] == {}
        bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_removal_changes_nothing(self, dispatcher, store, owned_config, bot):
        add_group(owned_config, "-100300", "Ops")
        store.save(owned_config)
        event = ChatMemberStatusChanged(
            chat=ChatRef(id="-100300", type="supergroup", title="Ops"),
            changed_by=STRANGER,
            old_status="member",
            new_status="kicked",
        )
        await dispatcher.handle_event(event)
        assert "-100300" in store.load()["groups"]
        bot.send_message.assert_not_awaited()
