"""Communication sub-core: everything between Telegram and the agent.

- Inbound: transport events → plain dataclasses (inbound)
- Envelope: agent payload with context and quoted-reply blocks (envelope)
- Endpoint: the address handed to the agent and parsed by the reply path
- Outbound: reply directives and message splitting (outbound, sender)
- Telegram: the dispatcher and its python-telegram-bot wiring
"""

from .endpoint import Endpoint, build_endpoint, correlation_id_for, parse_endpoint
from .envelope import format_agent_message
from .inbound import (
    ChatMemberStatusChanged,
    DocumentMessage,
    MemberAdded,
    PhotoMessage,
    TextMessage,
    event_from_update,
)
from .outbound import OutboundReply, parse_reply, split_message

__all__ = [
    # Inbound
    "TextMessage",
    "PhotoMessage",
    "DocumentMessage",
    "MemberAdded",
    "ChatMemberStatusChanged",
    "event_from_update",
    # Envelope / endpoint
    "format_agent_message",
    "Endpoint",
    "build_endpoint",
    "correlation_id_for",
    "parse_endpoint",
    # Outbound
    "OutboundReply",
    "parse_reply",
    "split_message",
]
