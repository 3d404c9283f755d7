from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from agent_dispatch.supervisor.contacts import JsonContactBook
from agent_dispatch.supervisor.enrichment import TrustLevel

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Context Enrichment"),
]


def test_resolve_or_create_persists_untrusted_contact(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "contacts.json"
    book = JsonContactBook(path)

    contact = book.resolve_or_create("+15550001111")

    assert contact.id == "+15550001111"
    assert contact.trust_level == TrustLevel.NOT_TRUSTED
    assert contact.command_permissions == []
    assert contact.first_seen is not None
    stored = json.loads(path.read_text("utf-8"))
    assert stored["+15550001111"]["trust_level"] == "not_trusted"
    assert not (tmp_path / "nested" / "contacts.json.tmp").exists()


def test_resolve_returns_existing_contact_unchanged(tmp_path: Path) -> None:
    path = tmp_path / "contacts.json"
    path.write_text(
        json.dumps(
            {
                "+15550001111": {
                    "id": "+15550001111",
                    "display_name": "Sarah",
                    "trust_level": "trusted",
                    "command_permissions": ["/status"],
                    "custom_field": "kept on disk",
                },
            },
        ),
        "utf-8",
    )
    book = JsonContactBook(path)

    contact = book.resolve_or_create("+15550001111")

    assert contact.display_name == "Sarah"
    assert contact.trust_level == TrustLevel.TRUSTED
    assert contact.command_permissions == ["/status"]
    assert "custom_field" in json.loads(path.read_text("utf-8"))["+15550001111"]


def test_malformed_file_raises_instead_of_overwriting(tmp_path: Path) -> None:
    path = tmp_path / "contacts.json"
    path.write_text("[1, 2, 3]", "utf-8")
    book = JsonContactBook(path)

    with pytest.raises(TypeError):
        book.resolve_or_create("+15550001111")
    assert path.read_text("utf-8") == "[1, 2, 3]"
