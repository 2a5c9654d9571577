"""
ProfileDataStore — typed accessors over the key-value store.

Key scheme:
  profiles              list of profile dicts
  contacts:<profile>    {contact_id: display name}
  messages:<profile>    list of message records, newest last, capped
  flows:<profile>       flow document (editor JSON)
  sessions:<profile>    {contact_id: conversation session dict}
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BaseKeyValueStore
from models.schemas import Profile

logger = structlog.get_logger()

MESSAGE_HISTORY_LIMIT = 1000

DEFAULT_PROFILES = [{"id": "default", "name": "Default Profile", "unreadCount": 0}]


class ProfileDataStore:

    def __init__(self, store: BaseKeyValueStore):
        self.store = store

    # ── Profiles ──────────────────────────────────────────

    def get_profiles(self) -> list[Profile]:
        raw = self.store.get("profiles", DEFAULT_PROFILES)
        profiles = []
        for item in raw if isinstance(raw, list) else []:
            try:
                profiles.append(Profile.model_validate(item))
            except ValueError as e:
                logger.warning("profile_record_invalid", error=str(e))
        return profiles

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        return next((p for p in self.get_profiles() if p.id == profile_id), None)

    def save_profiles(self, profiles: list[Profile]):
        self.store.set("profiles", [p.to_json_dict() for p in profiles])

    def ensure_profile(self, profile_id: str, name: str = "") -> Profile:
        profiles = self.get_profiles()
        existing = next((p for p in profiles if p.id == profile_id), None)
        if existing:
            return existing
        profile = Profile(id=profile_id, name=name or profile_id)
        profiles.append(profile)
        self.save_profiles(profiles)
        return profile

    def increment_unread(self, profile_id: str) -> int:
        profiles = self.get_profiles()
        profile = next((p for p in profiles if p.id == profile_id), None)
        if profile is None:
            return 0
        profile.unread_count += 1
        self.save_profiles(profiles)
        return profile.unread_count

    def reset_unread(self, profile_id: str):
        profiles = self.get_profiles()
        for p in profiles:
            if p.id == profile_id:
                p.unread_count = 0
        self.save_profiles(profiles)

    def remove_profile(self, profile_id: str):
        self.save_profiles([p for p in self.get_profiles() if p.id != profile_id])

    # ── Contacts ──────────────────────────────────────────

    def get_contacts(self, profile_id: str) -> dict[str, str]:
        contacts = self.store.get(f"contacts:{profile_id}", {})
        return contacts if isinstance(contacts, dict) else {}

    def contact_name(self, profile_id: str, contact_id: str) -> Optional[str]:
        return self.get_contacts(profile_id).get(contact_id)

    def save_contact_name(self, profile_id: str, contact_id: str, name: str):
        contacts = dict(self.get_contacts(profile_id))
        contacts[contact_id] = name
        self.store.set(f"contacts:{profile_id}", contacts)

    # ── Messages ──────────────────────────────────────────

    def get_messages(self, profile_id: str) -> list[dict[str, Any]]:
        messages = self.store.get(f"messages:{profile_id}", [])
        return messages if isinstance(messages, list) else []

    def add_message(self, profile_id: str, message: dict[str, Any]):
        messages = list(self.get_messages(profile_id))
        messages.append(message)
        if len(messages) > MESSAGE_HISTORY_LIMIT:
            messages = messages[-MESSAGE_HISTORY_LIMIT:]
        self.store.set(f"messages:{profile_id}", messages)

    # ── Flows & sessions ──────────────────────────────────

    def get_flow_document(self, profile_id: str) -> Any:
        return self.store.get(f"flows:{profile_id}", {"flows": [], "idleEnabled": False})

    def save_flow_document(self, profile_id: str, document: dict[str, Any]):
        self.store.set(f"flows:{profile_id}", document)

    def get_sessions(self, profile_id: str) -> dict[str, Any]:
        sessions = self.store.get(f"sessions:{profile_id}", {})
        return sessions if isinstance(sessions, dict) else {}

    def save_sessions(self, profile_id: str, sessions: dict[str, Any]):
        self.store.set(f"sessions:{profile_id}", sessions)

    def session_profiles(self) -> list[str]:
        return [k.split(":", 1)[1] for k in self.store.keys() if k.startswith("sessions:")]

    # ── Deletion ──────────────────────────────────────────

    def delete_profile_data(self, profile_id: str):
        for prefix in ("contacts", "messages", "flows", "sessions"):
            self.store.delete(f"{prefix}:{profile_id}")
        self.remove_profile(profile_id)
        logger.info("profile_data_deleted", profile_id=profile_id)
