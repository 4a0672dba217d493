"""
Tests for TradingSession: cookie cache and exactly-once flag.
"""

import os
from datetime import date
from unittest.mock import patch

import pytest

from robotrader.errors import AuthExpiredError
from robotrader.session import TradingSession


class TestCookieCache:
    """ensure_cookie_loaded re-reads only when needed."""

    def test_first_call_reads_file(self, pqp_session, cookie_file):
        cookie = pqp_session.ensure_cookie_loaded(cookie_file)
        assert cookie == "session_id=abc123; user_remember=1"
        assert pqp_session.cookie_reads == 1

    def test_unchanged_file_is_not_reread(self, pqp_session, cookie_file):
        pqp_session.ensure_cookie_loaded(cookie_file)
        pqp_session.ensure_cookie_loaded(cookie_file)
        assert pqp_session.cookie_reads == 1

    def test_changed_mtime_forces_reread(self, pqp_session, cookie_file):
        pqp_session.ensure_cookie_loaded(cookie_file)

        cookie_file.write_text("session_id=fresh", encoding="utf-8")
        stat = os.stat(cookie_file)
        os.utime(cookie_file, (stat.st_atime + 10, stat.st_mtime + 10))

        assert pqp_session.ensure_cookie_loaded(cookie_file) == "session_id=fresh"
        assert pqp_session.cookie_reads == 2

    def test_verified_cookie_skips_stat(self, pqp_session, cookie_file):
        pqp_session.ensure_cookie_loaded(cookie_file)
        pqp_session.cookie_verified_working = True
        cookie_file.unlink()

        assert pqp_session.ensure_cookie_loaded(cookie_file) == "session_id=abc123; user_remember=1"
        assert pqp_session.cookie_reads == 1

    def test_missing_file_is_auth_expired(self, pqp_session, tmp_path):
        with pytest.raises(AuthExpiredError):
            pqp_session.ensure_cookie_loaded(tmp_path / "missing.txt")

    def test_empty_file_is_auth_expired(self, pqp_session, tmp_path):
        path = tmp_path / "empty.txt"
        path.write_text("  \n", encoding="utf-8")
        with pytest.raises(AuthExpiredError):
            pqp_session.ensure_cookie_loaded(path)

    def test_undecodable_file_is_auth_expired(self, pqp_session, tmp_path):
        path = tmp_path / "binary.txt"
        path.write_bytes(b"session=\xff\xfe")
        with pytest.raises(AuthExpiredError, match="UTF-8"):
            pqp_session.ensure_cookie_loaded(path)
        assert pqp_session.cookie is None

    def test_directory_instead_of_file_is_auth_expired(self, pqp_session, tmp_path):
        with pytest.raises(AuthExpiredError, match="could not be read"):
            pqp_session.ensure_cookie_loaded(tmp_path)

    def test_unreadable_file_is_auth_expired(self, pqp_session, cookie_file):
        with patch("pathlib.Path.read_text", side_effect=PermissionError("denied")):
            with pytest.raises(AuthExpiredError, match="denied"):
                pqp_session.ensure_cookie_loaded(cookie_file)


class TestTradedFlag:
    """has_traded is monotonic."""

    def test_try_mark_traded_once(self, pqp_session):
        assert not pqp_session.has_traded
        assert pqp_session.try_mark_traded()
        assert not pqp_session.try_mark_traded()
        assert pqp_session.has_traded

    def test_flag_cannot_be_preset_by_constructor(self):
        with pytest.raises(TypeError):
            TradingSession(strategy="PQP", target_date=date(2025, 10, 13),
                           is_run_day=True, _has_traded=True)
        with pytest.raises(TypeError):
            TradingSession(strategy="PQP", target_date=date(2025, 10, 13),
                           is_run_day=True, _log_lines=["forged"])

    def test_run_log_accumulates(self, pqp_session):
        pqp_session.log("first")
        pqp_session.log("second")
        lines = pqp_session.run_log.splitlines()
        assert len(lines) == 2
        assert lines[0].endswith(": first")
        assert pqp_session.target_date_str == "2025-10-13"
