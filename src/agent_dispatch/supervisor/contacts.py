"""File-backed contact book used for context enrichment."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from agent_dispatch.storage.common import utc_now
from agent_dispatch.supervisor.enrichment import Contact, TrustLevel

logger = logging.getLogger(__name__)


class JsonContactBook:
    """Contacts stored as one JSON object keyed by phone number.

    A missing file is an empty book. A malformed file raises instead of being
    treated as empty, so a later save cannot wipe existing trust profiles.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def resolve_or_create(self, phone_number: str) -> Contact:
        """Return the stored contact, creating a ``not_trusted`` one on first sight."""

        with self._lock:
            contacts = self._load()
            existing = contacts.get(phone_number)
            if existing is not None:
                return Contact.from_dict(existing)

            now = utc_now().isoformat()
            contact = Contact(
                id=phone_number,
                trust_level=TrustLevel.NOT_TRUSTED,
                first_seen=now,
                last_interaction=now,
            )
            contacts[phone_number] = contact.to_dict()
            self._save(contacts)
            logger.info("Created contact record for %s", phone_number)
            return contact

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        payload = json.loads(self.path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise TypeError(f"Expected JSON object in {self.path}")
        return payload

    def _save(self, contacts: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(
            json.dumps(contacts, ensure_ascii=False, indent=2, sort_keys=True),
            "utf-8",
        )
        tmp_path.replace(self.path)
