"""Tests for worker credential persistence and prompting."""

from __future__ import annotations

import stat

import pytest

from kuzco_manager.core.credentials import (
    CredentialStore,
    format_credentials,
    parse_credentials_text,
)
from kuzco_manager.core.errors import CredentialsValidationError
from kuzco_manager.core.models import WorkerCredentials


def scripted(*answers: str):
    """Prompt function that replays answers in order and records the labels."""
    queue = list(answers)
    asked: list[tuple[str, bool]] = []

    def ask(label: str, secret: bool) -> str:
        asked.append((label, secret))
        return queue.pop(0)

    ask.asked = asked  # type: ignore[attr-defined]
    return ask


@pytest.fixture
def store(tmp_path) -> CredentialStore:
    return CredentialStore(tmp_path / "state" / "worker_info")


class TestParsing:
    """Tests for the KEY=value file format."""

    def test_parse_plain_values(self):
        values = parse_credentials_text("WORKER_ID=abc123\nREGISTRATION_CODE=xyz-456\n")
        assert values == {"WORKER_ID": "abc123", "REGISTRATION_CODE": "xyz-456"}

    def test_parse_skips_comments_blank_lines_and_export(self):
        text = "# saved by installer\n\nexport WORKER_ID=abc123\nREGISTRATION_CODE='xyz-456'\n"
        values = parse_credentials_text(text)
        assert values == {"WORKER_ID": "abc123", "REGISTRATION_CODE": "xyz-456"}

    def test_parse_key_aliases(self):
        values = parse_credentials_text("KUZCO_WORKER_ID=w1\ncode=c1\n")
        assert values == {"WORKER_ID": "w1", "REGISTRATION_CODE": "c1"}

    def test_parse_ignores_unknown_keys(self):
        assert parse_credentials_text("OTHER=1\nnot a pair\n") == {}

    def test_format_quotes_special_characters(self):
        creds = WorkerCredentials(worker_id="abc 123", registration_code="x$y")
        text = format_credentials(creds)
        assert "WORKER_ID='abc 123'" in text
        assert "REGISTRATION_CODE='x$y'" in text
        assert parse_credentials_text(text) == {
            "WORKER_ID": "abc 123",
            "REGISTRATION_CODE": "x$y",
        }


class TestCredentialStore:
    """Tests for CredentialStore load/save/reset."""

    def test_load_missing_file_returns_none(self, store):
        assert store.load() is None
        assert not store.exists()

    def test_save_then_load(self, store, credentials):
        store.save(credentials)
        loaded = store.load()
        assert loaded == credentials

    def test_save_is_owner_only(self, store, credentials):
        path = store.save(credentials)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_save_leaves_no_temp_files(self, store, credentials):
        store.save(credentials)
        assert [p.name for p in store.path.parent.iterdir()] == ["worker_info"]

    def test_load_rejects_missing_key(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("WORKER_ID=abc123\n")
        with pytest.raises(CredentialsValidationError, match="REGISTRATION_CODE"):
            store.load()

    def test_load_rejects_empty_value(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("WORKER_ID=\nREGISTRATION_CODE=xyz-456\n")
        with pytest.raises(CredentialsValidationError, match="worker_id"):
            store.load()

    def test_reset_removes_file(self, store, credentials):
        store.save(credentials)
        assert store.reset() is True
        assert not store.exists()
        assert store.reset() is False


class TestPrompting:
    """Tests for load_or_prompt."""

    def test_uses_saved_credentials_without_prompting(self, store, credentials):
        store.save(credentials)
        ask = scripted()
        assert store.load_or_prompt(ask) == credentials
        assert ask.asked == []

    def test_prompts_and_persists_when_missing(self, store):
        ask = scripted("abc123", "xyz-456")
        creds = store.load_or_prompt(ask)

        assert creds.worker_id == "abc123"
        assert creds.registration_code == "xyz-456"
        assert ask.asked == [("Enter Worker ID", False), ("Enter Registration Code", True)]
        assert store.load() == creds

    def test_input_is_stripped(self, store):
        creds = store.load_or_prompt(scripted("  abc123 ", "xyz-456\t"))
        assert creds == WorkerCredentials(worker_id="abc123", registration_code="xyz-456")

    def test_empty_input_reprompts(self, store):
        ask = scripted("", "xyz-456", "abc123", "xyz-456")
        creds = store.load_or_prompt(ask)
        assert creds.worker_id == "abc123"
        assert len(ask.asked) == 4

    def test_empty_input_is_never_persisted(self, store):
        ask = scripted("", "", "", "", "", "")
        with pytest.raises(CredentialsValidationError, match="3 attempts"):
            store.load_or_prompt(ask)
        assert not store.exists()

    def test_invalid_file_is_replaced(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("garbage\n")
        creds = store.load_or_prompt(scripted("abc123", "xyz-456"))
        assert store.load() == creds
