"""Tests for session file parsing and the session store."""

import os
import stat

import pytest

from fresh_auth.session import SessionStore, parse_session_text


class TestParseSessionText:
    """Tests for parse_session_text function."""

    def test_plain_text_is_trimmed(self):
        assert parse_session_text("  abc123 \n") == "abc123"

    def test_empty_is_none(self):
        assert parse_session_text("") is None
        assert parse_session_text("   \n") is None

    @pytest.mark.parametrize("field", ["agentSessionId", "agentSession", "session"])
    def test_json_fields(self, field):
        assert parse_session_text(f'{{"{field}": " s-1 "}}') == "s-1"

    def test_json_field_precedence(self):
        raw = '{"session": "third", "agentSessionId": "first", "agentSession": "second"}'
        assert parse_session_text(raw) == "first"

    def test_json_without_id_is_none(self):
        assert parse_session_text('{"other": "x"}') is None
        assert parse_session_text('{"agentSessionId": ""}') is None

    def test_malformed_json_is_taken_verbatim(self):
        assert parse_session_text('{"agentSessionId": ') == '{"agentSessionId":'

    def test_json_scalar_is_taken_verbatim(self):
        assert parse_session_text("12345") == "12345"


class TestSessionStore:
    """Tests for SessionStore load/save/clear."""

    def _store(self, tmp_path):
        return SessionStore(tmp_path / "new" / "agent-session", [tmp_path / "old" / "agent-session"])

    def test_save_then_load_trims(self, tmp_path):
        store = self._store(tmp_path)
        path = store.save("  sess-42  ")
        assert path.read_text() == "sess-42\n"
        assert store.load() == "sess-42"

    def test_save_is_owner_only(self, tmp_path):
        store = self._store(tmp_path)
        store.primary.parent.mkdir(parents=True)
        store.primary.write_text("old")
        os.chmod(store.primary, 0o644)
        store.save("sess")
        assert stat.S_IMODE(store.primary.stat().st_mode) == 0o600

    def test_load_missing_is_none(self, tmp_path):
        assert self._store(tmp_path).load() is None

    def test_primary_wins_over_legacy(self, tmp_path):
        store = self._store(tmp_path)
        store.legacy[0].parent.mkdir(parents=True)
        store.legacy[0].write_text("legacy")
        assert store.load() == "legacy"
        store.save("primary")
        assert store.load() == "primary"

    def test_malformed_primary_falls_back(self, tmp_path):
        store = self._store(tmp_path)
        store.primary.parent.mkdir(parents=True)
        store.primary.write_text('{"unrelated": true}')
        store.legacy[0].parent.mkdir(parents=True)
        store.legacy[0].write_text('{"agentSession": "from-legacy"}')
        assert store.load() == "from-legacy"

    def test_directory_in_place_of_file_is_skipped(self, tmp_path):
        store = self._store(tmp_path)
        store.primary.mkdir(parents=True)
        assert store.load() is None

    def test_clear_removes_every_candidate(self, tmp_path):
        store = self._store(tmp_path)
        store.save("a")
        store.legacy[0].parent.mkdir(parents=True)
        store.legacy[0].write_text("b")
        store.clear()
        assert not store.primary.exists()
        assert not store.legacy[0].exists()
        assert store.load() is None

    def test_clear_without_files(self, tmp_path):
        self._store(tmp_path).clear()
