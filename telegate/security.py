"""Authorization policy: who may talk to the agent, and where.

Pure decision functions over the config document plus the few mutations
that change the policy (owner binding, groups, whitelist). Mutations only
touch the dict they are given; persisting it is the caller's job.

Every chat/sender ID is compared as a normalized string. The transport
hands out ints, the config file holds strings, and the two must never be
compared raw.

Private chats:
    owner OR whitelisted (by ID, or by username case-insensitively).

Groups, in order:
    1. group_policy == "disabled"  → nobody, not even the owner
    2. owner                       → allowed
    3. group_policy == "open"      → any group; "allowlist" → configured groups only
    4. per-group allow_from        → "*"/empty/absent = everyone, else listed senders
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("telegate.security")

GROUP_POLICIES = ("disabled", "allowlist", "open")
GROUP_MODES = ("mention", "broadcast")

_INDIVIDUAL_ID_RE = re.compile(r"^[1-9][0-9]*$")


def normalize_id(value) -> str:
    """Normalize an external identifier to its string form."""
    if value is None:
        return ""
    return str(value).strip()


def is_individual_id(value) -> bool:
    """True if the ID denotes a single user account.

    Telegram user IDs are positive; groups and channels are negative.
    """
    return bool(_INDIVIDUAL_ID_RE.match(normalize_id(value)))


# ============================================================
# OWNER
# ============================================================

def has_owner(config: dict) -> bool:
    owner = config.get("owner") or {}
    return owner.get("id") is not None


def is_owner(config: dict, sender_id) -> bool:
    if not has_owner(config):
        return False
    return normalize_id(sender_id) == normalize_id(config["owner"]["id"])


def bind_owner(config: dict, sender_id, display_name: Optional[str] = None) -> bool:
    """Bind the first private-chat sender as owner.

    The owner is also added to the whitelist. Refuses (returns False, no
    mutation) when an owner is already bound or the ID is not an
    individual account.
    """
    if has_owner(config):
        logger.warning(f"Refusing to bind {sender_id} as owner: owner already bound")
        return False
    sender = normalize_id(sender_id)
    if not is_individual_id(sender):
        logger.warning(f"Refusing to bind {sender_id!r} as owner: not an individual account")
        return False

    config["owner"] = {
        "id": sender,
        "display_name": display_name,
        "bound_at": datetime.now(timezone.utc).isoformat(),
    }
    whitelist = config.setdefault("whitelist", {"ids": [], "names": []})
    ids = whitelist.setdefault("ids", [])
    if sender not in ids:
        ids.append(sender)
    logger.info(f"Owner bound: {display_name or sender} ({sender})")
    return True


# ============================================================
# PRIVATE CHATS
# ============================================================

def is_whitelisted(config: dict, sender_id, username: Optional[str] = None) -> bool:
    whitelist = config.get("whitelist") or {}
    if normalize_id(sender_id) in {normalize_id(i) for i in whitelist.get("ids") or []}:
        return True
    if username:
        names = {str(n).lower() for n in whitelist.get("names") or []}
        if username.lower() in names:
            return True
    return False


def is_authorized(config: dict, sender_id, username: Optional[str] = None) -> bool:
    """Private-chat gate: owner or whitelisted."""
    return is_owner(config, sender_id) or is_whitelisted(config, sender_id, username)


def add_to_whitelist(config: dict, sender_id=None, username: Optional[str] = None) -> bool:
    whitelist = config.setdefault("whitelist", {"ids": [], "names": []})
    changed = False
    if sender_id is not None:
        sid = normalize_id(sender_id)
        ids = whitelist.setdefault("ids", [])
        if sid not in ids:
            ids.append(sid)
            changed = True
    if username:
        names = whitelist.setdefault("names", [])
        if username.lower() not in names:
            names.append(username.lower())
            changed = True
    return changed


def remove_from_whitelist(config: dict, sender_id=None, username: Optional[str] = None) -> bool:
    whitelist = config.setdefault("whitelist", {"ids": [], "names": []})
    changed = False
    if sender_id is not None:
        sid = normalize_id(sender_id)
        before = whitelist.get("ids") or []
        whitelist["ids"] = [i for i in before if normalize_id(i) != sid]
        changed = len(whitelist["ids"]) != len(before)
    if username:
        before = whitelist.get("names") or []
        whitelist["names"] = [n for n in before if n.lower() != username.lower()]
        changed = changed or len(whitelist["names"]) != len(before)
    return changed


# ============================================================
# GROUPS
# ============================================================

def get_group(config: dict, chat_id) -> Optional[dict]:
    return (config.get("groups") or {}).get(normalize_id(chat_id))


def is_group_allowed(config: dict, chat_id) -> bool:
    policy = config.get("group_policy", "allowlist")
    if policy == "disabled":
        return False
    if policy == "open":
        return True
    return get_group(config, chat_id) is not None


def is_broadcast_group(config: dict, chat_id) -> bool:
    group = get_group(config, chat_id)
    return bool(group) and group.get("mode") == "broadcast"


def is_sender_allowed_in_group(config: dict, chat_id, sender_id) -> bool:
    group = get_group(config, chat_id)
    if not group:
        return True
    allow_from = group.get("allow_from")
    if not allow_from or "*" in allow_from:
        return True
    return normalize_id(sender_id) in {normalize_id(s) for s in allow_from}


def is_group_message_authorized(config: dict, chat_id, sender_id) -> bool:
    """Combined group gate: policy, owner bypass, group allow, sender filter."""
    if config.get("group_policy") == "disabled":
        return False
    if is_owner(config, sender_id):
        return True
    return is_group_allowed(config, chat_id) and is_sender_allowed_in_group(config, chat_id, sender_id)


def group_history_limit(config: dict, chat_id) -> int:
    default = (config.get("message") or {}).get("context_messages") or 5
    group = get_group(config, chat_id)
    if group and group.get("history_limit"):
        return int(group["history_limit"])
    return int(default)


def add_group(
    config: dict,
    chat_id,
    name: Optional[str],
    mode: str = "mention",
    history_limit: Optional[int] = None,
    allow_from: Optional[list] = None,
) -> bool:
    """Add a group. Refuses if the group already exists (remove it first)."""
    if mode not in GROUP_MODES:
        raise ValueError(f"Unknown group mode: {mode!r}")
    key = normalize_id(chat_id)
    groups = config.setdefault("groups", {})
    if key in groups:
        return False
    default_limit = (config.get("message") or {}).get("context_messages") or 5
    groups[key] = {
        "name": name,
        "mode": mode,
        "allow_from": [normalize_id(s) for s in allow_from] if allow_from else ["*"],
        "history_limit": history_limit or default_limit,
        "added_at": datetime.now(timezone.utc).isoformat(),
    }
    return True


def remove_group(config: dict, chat_id) -> bool:
    groups = config.setdefault("groups", {})
    return groups.pop(normalize_id(chat_id), None) is not None


def set_group_allow_from(config: dict, chat_id, senders: list) -> bool:
    """Replace a group's sender filter. ``["*"]`` or an empty list allows everyone."""
    group = get_group(config, chat_id)
    if group is None:
        return False
    ids = [normalize_id(s) for s in senders if normalize_id(s)]
    group["allow_from"] = ["*"] if not ids or "*" in ids else ids
    return True


def set_group_policy(config: dict, policy: str) -> None:
    if policy not in GROUP_POLICIES:
        raise ValueError(f"Unknown group policy: {policy!r}")
    config["group_policy"] = policy
