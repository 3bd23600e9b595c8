"""Stored gateway config: authorization policy and feature flags.

The document lives at a fixed JSON path and is shared between the running
gateway and the admin CLI. Both sides reload it before use and write it
back with temp-file + atomic rename, so a reader never sees a partial file.
Concurrent writers are last-writer-wins.

Loading is forgiving: older documents are migrated and deep-merged with the
defaults so they gain new fields without losing keys this version does not
know about. A missing or broken file falls back to the defaults.
"""

import copy
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from .security import GROUP_MODES, GROUP_POLICIES, is_individual_id, normalize_id

logger = logging.getLogger("telegate.config")

DEFAULT_INTERNAL_PORT = 3460
DEFAULT_CONTEXT_MESSAGES = 5

DEFAULT_CONFIG = {
    "enabled": True,
    "owner": {"id": None, "display_name": None, "bound_at": None},
    "whitelist": {"ids": [], "names": []},
    "group_policy": "allowlist",
    "groups": {},
    "features": {"download_media": True},
    "message": {"context_messages": DEFAULT_CONTEXT_MESSAGES},
    "internal_port": DEFAULT_INTERNAL_PORT,
}


def default_config() -> dict:
    """Return a fresh copy of the default document."""
    return copy.deepcopy(DEFAULT_CONFIG)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def deep_merge_defaults(defaults: dict, loaded: dict) -> dict:
    """Merge defaults into a loaded document, one level deep.

    Top-level keys from ``loaded`` win and unknown keys are kept. For every
    default whose value is a dict, the loaded sub-object is overlaid on the
    default sub-object, skipping ``None`` values so a half-written section
    cannot erase a default.
    """
    result = {**copy.deepcopy(defaults), **loaded}
    for key, default_value in defaults.items():
        if isinstance(default_value, dict) and default_value:
            loaded_obj = loaded.get(key)
            if not isinstance(loaded_obj, dict):
                loaded_obj = {}
            filtered = {k: v for k, v in loaded_obj.items() if v is not None}
            result[key] = {**copy.deepcopy(default_value), **filtered}
    return result


def _as_list(value) -> list:
    # Anything but a list counts as empty
    return value if isinstance(value, list) else []


def migrate_legacy(doc: dict) -> list[str]:
    """Upgrade an older config document in place.

    Returns:
        Human-readable notes, one per applied migration (empty if none).
    """
    notes = []

    owner = doc.get("owner")
    if isinstance(owner, dict) and ("chat_id" in owner or "username" in owner):
        doc["owner"] = {
            "id": normalize_id(owner.get("chat_id")) if owner.get("chat_id") is not None else None,
            "display_name": owner.get("username"),
            "bound_at": owner.get("bound_at"),
        }
        notes.append("Renamed owner.chat_id/username to owner.id/display_name")

    owner = doc.get("owner")
    if isinstance(owner, dict) and owner.get("id") is not None and not is_individual_id(owner["id"]):
        doc["owner"] = {"id": None, "display_name": None, "bound_at": None}
        notes.append("Reset owner bound to a non-individual account for re-binding")

    whitelist = doc.get("whitelist")
    if isinstance(whitelist, dict) and ("chat_ids" in whitelist or "usernames" in whitelist):
        ids = [normalize_id(i) for i in _as_list(whitelist.pop("chat_ids", None)) if i is not None]
        names = [str(n).lower() for n in _as_list(whitelist.pop("usernames", None)) if n is not None]
        whitelist["ids"] = sorted(set(map(normalize_id, _as_list(whitelist.get("ids")))) | set(ids))
        whitelist["names"] = sorted(set(map(str, _as_list(whitelist.get("names")))) | set(names))
        notes.append("Renamed whitelist.chat_ids/usernames to whitelist.ids/names")

    if "groupPolicy" in doc:
        legacy_policy = doc.pop("groupPolicy")
        if "group_policy" not in doc:
            doc["group_policy"] = legacy_policy
        notes.append("Renamed groupPolicy to group_policy")

    if ("allowed_groups" in doc or "smart_groups" in doc) and not doc.get("groups"):
        message = doc.get("message")
        limit = (message.get("context_messages") if isinstance(message, dict) else None) or DEFAULT_CONTEXT_MESSAGES
        groups = {}
        for legacy_key, mode in (("allowed_groups", "mention"), ("smart_groups", "broadcast")):
            for g in _as_list(doc.get(legacy_key)):
                if isinstance(g, (str, int)):
                    g = {"chat_id": g}
                if not isinstance(g, dict) or g.get("chat_id") is None:
                    continue
                groups[normalize_id(g["chat_id"])] = {
                    "name": g.get("name"),
                    "mode": mode,
                    "allow_from": ["*"],
                    "history_limit": limit,
                    "added_at": g.get("added_at") or utc_now_iso(),
                }
        doc["groups"] = groups
        if "group_policy" not in doc:
            gw = doc.get("group_whitelist")
            enabled = gw.get("enabled") if isinstance(gw, dict) else None
            doc["group_policy"] = "open" if enabled is False else "allowlist"
        notes.append(f"Migrated {len(groups)} legacy groups to unified groups map")
    for legacy_key in ("allowed_groups", "smart_groups", "group_whitelist"):
        doc.pop(legacy_key, None)

    groups = doc.get("groups")
    for group in (groups.values() if isinstance(groups, dict) else ()):
        if not isinstance(group, dict):
            continue
        if "allowFrom" in group:
            group.setdefault("allow_from", group.pop("allowFrom"))
        if "historyLimit" in group:
            group.setdefault("history_limit", group.pop("historyLimit"))
        if group.get("mode") == "smart":
            group["mode"] = "broadcast"

    features = doc.get("features")
    if isinstance(features, dict):
        for dead in ("auto_split_messages", "max_message_length"):
            if dead in features:
                del features[dead]
                notes.append(f"Removed dead features.{dead}")

    return notes


def normalize_config(config: dict) -> dict:
    """Coerce identifiers to strings and drop malformed policy values."""
    groups = config.get("groups")
    if not isinstance(groups, dict):
        groups = {}
    normalized = {}
    for chat_id, group in groups.items():
        if not isinstance(group, dict):
            continue
        if group.get("mode") not in GROUP_MODES:
            group["mode"] = "mention"
        if "allow_from" in group and group["allow_from"] is not None:
            allow_from = group["allow_from"]
            if isinstance(allow_from, (str, int)):
                allow_from = [allow_from]
            group["allow_from"] = [normalize_id(s) for s in _as_list(allow_from)]
        normalized[normalize_id(chat_id)] = group
    config["groups"] = normalized

    if config.get("group_policy") not in GROUP_POLICIES:
        logger.warning(f"Unknown group_policy {config.get('group_policy')!r}, using 'allowlist'")
        config["group_policy"] = "allowlist"

    whitelist = config["whitelist"]
    whitelist["ids"] = [normalize_id(i) for i in _as_list(whitelist.get("ids")) if i is not None]
    whitelist["names"] = [str(n).lower() for n in _as_list(whitelist.get("names")) if n is not None]

    owner = config["owner"]
    if owner.get("id") is not None:
        owner["id"] = normalize_id(owner["id"])
    return config


class ConfigStore:
    """JSON document store with atomic save."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict:
        """Load the document, falling back to defaults on any read problem."""
        try:
            with open(self.path, encoding="utf-8") as f:
                loaded = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Config file {self.path} not found, using defaults")
            return default_config()
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config {self.path}, using defaults: {e}")
            return default_config()

        if not isinstance(loaded, dict):
            logger.error(f"Config {self.path} is not a JSON object, using defaults")
            return default_config()

        try:
            notes = migrate_legacy(loaded)
            config = normalize_config(deep_merge_defaults(DEFAULT_CONFIG, loaded))
        except (TypeError, AttributeError, ValueError) as e:
            logger.error(f"Config {self.path} has malformed values, using defaults: {e}")
            return default_config()
        for note in notes:
            logger.info(f"Config migration: {note}")
        return config

    def save(self, config: dict) -> bool:
        """Write the document atomically. Returns False on failure."""
        text = json.dumps(config, ensure_ascii=False, indent=2) + "\n"
        tmp = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=self.path.name + ".", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, self.path)
            tmp = None
            return True
        except OSError as e:
            logger.error(f"Failed to save config {self.path}: {e}")
            return False
        finally:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)

    def migrate(self) -> list[str]:
        """Apply legacy migrations to the file on disk and save if anything changed."""
        try:
            with open(self.path, encoding="utf-8") as f:
                loaded = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Cannot migrate config {self.path}: {e}")
            return []
        if not isinstance(loaded, dict):
            return []
        try:
            notes = migrate_legacy(loaded)
            config = normalize_config(deep_merge_defaults(DEFAULT_CONFIG, loaded))
        except (TypeError, AttributeError, ValueError) as e:
            logger.error(f"Cannot migrate config {self.path}: {e}")
            return []
        if notes:
            self.save(config)
        return notes
