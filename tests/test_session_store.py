"""Unit tests for session_store: the cached console session on disk."""

from __future__ import annotations

import json
import os
import stat

from session_store import SESSION_TTL, AuthSession, SessionStore
from tests.fakes import NOW


def _mode(path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


class TestLoadSave:
    def test_round_trip(self, session_store, auth_session) -> None:
        session_store.save(auth_session)
        assert session_store.load() == auth_session

    def test_file_format(self, session_store, auth_session) -> None:
        session_store.save(auth_session)
        data = json.loads(session_store.path.read_text())
        assert data == {
            "ticket": auth_session.ticket,
            "csrfToken": auth_session.csrf_token,
            "username": "root@pam",
            "timestampMs": int(NOW * 1000),
        }

    def test_permissions(self, session_store, auth_session) -> None:
        session_store.save(auth_session)
        assert _mode(session_store.path) == 0o600
        assert _mode(session_store.path.parent) == 0o700

    def test_permissions_tightened_on_rewrite(self, session_store, auth_session) -> None:
        session_store.path.parent.mkdir(parents=True)
        os.chmod(session_store.path.parent, 0o755)
        session_store.path.write_text("{}")
        os.chmod(session_store.path, 0o644)

        session_store.save(auth_session)

        assert _mode(session_store.path) == 0o600
        assert _mode(session_store.path.parent) == 0o700
        assert not [p for p in session_store.path.parent.iterdir() if p.name.endswith(".tmp")]

    def test_missing_file(self, session_store) -> None:
        assert session_store.load() is None

    def test_invalid_json(self, session_store) -> None:
        session_store.path.parent.mkdir(parents=True)
        session_store.path.write_text("{not json")
        assert session_store.load() is None

    def test_not_an_object(self, session_store) -> None:
        session_store.path.parent.mkdir(parents=True)
        session_store.path.write_text("[1, 2]")
        assert session_store.load() is None

    def test_missing_field(self, session_store) -> None:
        session_store.path.parent.mkdir(parents=True)
        session_store.path.write_text(json.dumps({"ticket": "t", "csrfToken": "c", "username": "u"}))
        assert session_store.load() is None

    def test_bad_timestamp(self, session_store) -> None:
        session_store.path.parent.mkdir(parents=True)
        payload = {"ticket": "t", "csrfToken": "c", "username": "u", "timestampMs": "yesterday"}
        session_store.path.write_text(json.dumps(payload))
        assert session_store.load() is None


class TestValidity:
    def _session(self, age_ms: int) -> AuthSession:
        return AuthSession("t", "c", "root@pam", int(NOW * 1000) - age_ms)

    def test_fresh(self, session_store) -> None:
        assert session_store.is_valid(self._session(0))

    def test_just_below_ttl(self, session_store) -> None:
        assert session_store.is_valid(self._session(SESSION_TTL * 1000 - 1))

    def test_exactly_ttl_is_expired(self, session_store) -> None:
        assert not session_store.is_valid(self._session(SESSION_TTL * 1000))

    def test_101_minutes_old(self, session_store) -> None:
        assert SESSION_TTL == 100 * 60
        assert not session_store.is_valid(self._session(101 * 60 * 1000))

    def test_load_valid_filters_expired(self, session_store) -> None:
        session_store.save(self._session(101 * 60 * 1000))
        assert session_store.load() is not None
        assert session_store.load_valid() is None


class TestClear:
    def test_clear_removes_file(self, session_store, auth_session) -> None:
        session_store.save(auth_session)
        session_store.clear()
        assert not session_store.path.exists()
        assert session_store.load() is None

    def test_clear_without_file(self, tmp_path) -> None:
        store = SessionStore(tmp_path / "nothing" / "session.json")
        store.clear()
        assert not store.path.exists()
