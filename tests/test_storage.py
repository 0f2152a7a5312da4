"""Tests for JSON collections and the encrypted credential vault."""
from __future__ import annotations

import json

import pytest
from cryptography.fernet import Fernet

from agent_relay.domain import ChatMessage, Credential, NotFoundError, Session, ValidationError
from agent_relay.infrastructure.storage import CredentialVault, JsonCollection, load_or_create_key
from tests.conftest import make_session


# ---------------------------------------------------------------------------
# JsonCollection
# ---------------------------------------------------------------------------

def test_put_get_round_trip_keeps_messages(tmp_path):
    sessions = JsonCollection(str(tmp_path), "sessions", Session)
    sessions.put(make_session(messages=[ChatMessage(role="user", text="hi", kind="chat")]))
    loaded = sessions.get("s1")
    assert isinstance(loaded.messages[0], ChatMessage)
    assert loaded.messages[0].text == "hi"
    assert sessions.path == tmp_path / "sessions.json"


def test_missing_file_is_empty(tmp_path):
    sessions = JsonCollection(str(tmp_path / "nested"), "sessions", Session)
    assert sessions.load() == {}
    assert sessions.get("s1") is None
    assert sessions.values() == []


def test_update_bumps_version_and_missing_returns_none(tmp_path):
    sessions = JsonCollection(str(tmp_path), "sessions", Session)
    sessions.put(make_session())
    updated = sessions.update("s1", lambda s: setattr(s, "model", "gpt-4o"))
    assert updated.version == 1
    assert sessions.get("s1").model == "gpt-4o"
    assert sessions.update("nope", lambda s: None) is None


def test_delete(tmp_path):
    sessions = JsonCollection(str(tmp_path), "sessions", Session)
    sessions.put(make_session())
    assert sessions.delete("s1") is True
    assert sessions.delete("s1") is False


def test_corrupt_file_reads_as_empty(tmp_path):
    (tmp_path / "sessions.json").write_text("{not json", encoding="utf-8")
    assert JsonCollection(str(tmp_path), "sessions", Session).load() == {}


def test_malformed_entry_is_skipped(tmp_path):
    good = make_session("good").to_dict()
    (tmp_path / "sessions.json").write_text(json.dumps({"good": good, "bad": {"id": "bad"}}), encoding="utf-8")
    assert list(JsonCollection(str(tmp_path), "sessions", Session).load()) == ["good"]


def test_unknown_fields_are_ignored(tmp_path):
    data = make_session().to_dict()
    data["legacy_field"] = 1
    (tmp_path / "sessions.json").write_text(json.dumps({"s1": data}), encoding="utf-8")
    assert JsonCollection(str(tmp_path), "sessions", Session).get("s1").id == "s1"


def test_save_leaves_no_temp_file(tmp_path):
    JsonCollection(str(tmp_path), "sessions", Session).put(make_session())
    assert sorted(p.name for p in tmp_path.iterdir()) == ["sessions.json"]


# ---------------------------------------------------------------------------
# CredentialVault
# ---------------------------------------------------------------------------

def test_key_file_is_created_once(tmp_path):
    first = load_or_create_key(str(tmp_path))
    assert load_or_create_key(str(tmp_path)) == first
    assert (tmp_path / "secret.key").exists()


def test_explicit_secret_wins(tmp_path):
    secret = Fernet.generate_key().decode()
    assert load_or_create_key(str(tmp_path), secret) == secret.encode()
    assert not (tmp_path / "secret.key").exists()


def test_vault_encrypts_at_rest(stores, tmp_path):
    credential = stores.vault.add("openai", "main", "  sk-live-123  ")
    raw = (tmp_path / "credentials.json").read_text(encoding="utf-8")
    assert "sk-live-123" not in raw
    assert stores.vault.decrypt(credential.id) == "sk-live-123"


def test_vault_rejects_blank_key(stores):
    with pytest.raises(ValidationError):
        stores.vault.add("openai", "main", "   ")


def test_vault_unknown_id(stores):
    with pytest.raises(NotFoundError):
        stores.vault.decrypt("nope")


def test_vault_wrong_key_is_validation_error(tmp_path):
    store = JsonCollection(str(tmp_path), "credentials", Credential)
    credential = CredentialVault(store, Fernet.generate_key()).add("openai", "main", "sk-1")
    with pytest.raises(ValidationError):
        CredentialVault(store, Fernet.generate_key()).decrypt(credential.id)
