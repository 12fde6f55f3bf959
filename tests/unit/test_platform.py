"""Unit tests for discourse_etl.platform and the psycopg backend's pure helpers.

No database required; the connection is a MagicMock where one is needed.
"""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from discourse_etl.discourse_db import DiscourseDbPlatform, render_cooked, tag_name_errors
from discourse_etl.platform import CreatedTopic, PlatformError, PlatformUser, RateLimiter

USER = PlatformUser(id=7, username="asker", email="asker@example.com")


# ---------------------------------------------------------------------------
# PlatformError
# ---------------------------------------------------------------------------

class TestPlatformError:
    def test_single_message(self):
        exc = PlatformError("Title can't be blank")
        assert exc.messages == ["Title can't be blank"]
        assert str(exc) == "Title can't be blank"

    def test_joined_messages(self):
        exc = PlatformError(["Name is too long", "Name contains invalid characters"])
        assert str(exc) == "Name is too long, Name contains invalid characters"


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------

class TestRateLimiter:
    def test_defaults(self):
        rl = RateLimiter()
        assert rl.base_delay == 0.5
        assert rl.enabled is True

    def test_sleeps_when_enabled(self):
        rl = RateLimiter(base_delay=2.0, jitter=0.0)
        with patch("discourse_etl.platform.time.sleep") as fake_sleep:
            rl.sleep()
        fake_sleep.assert_called_once_with(2.0)
        assert rl.sleeps == 1

    def test_no_sleep_when_disabled(self):
        rl = RateLimiter(base_delay=2.0, jitter=0.0)
        rl.disable()
        with patch("discourse_etl.platform.time.sleep") as fake_sleep:
            rl.sleep()
        fake_sleep.assert_not_called()
        assert rl.sleeps == 0

    def test_enable_after_disable(self):
        rl = RateLimiter()
        rl.disable()
        rl.enable()
        assert rl.enabled is True

    def test_delay_never_negative(self):
        rl = RateLimiter(base_delay=0.0, jitter=1.0)
        with patch("discourse_etl.platform.random.uniform", return_value=-1.0), \
                patch("discourse_etl.platform.time.sleep") as fake_sleep:
            rl.sleep()
        fake_sleep.assert_called_once_with(0.0)


# ---------------------------------------------------------------------------
# render_cooked
# ---------------------------------------------------------------------------

class TestRenderCooked:
    def test_paragraphs(self):
        assert render_cooked("one\n\ntwo") == "<p>one</p>\n<p>two</p>"

    def test_single_newline_becomes_br(self):
        assert render_cooked("line one\nline two") == "<p>line one<br>line two</p>"

    def test_html_escaped(self):
        assert render_cooked("<script>x</script> & more") == (
            "<p>&lt;script&gt;x&lt;/script&gt; &amp; more</p>"
        )


# ---------------------------------------------------------------------------
# tag_name_errors
# ---------------------------------------------------------------------------

class TestTagNameErrors:
    def test_valid(self):
        assert tag_name_errors("accounts", 20) == []

    def test_too_long(self):
        assert tag_name_errors("x" * 21, 20) == ["Name is too long (maximum is 20 characters)"]

    def test_space_not_allowed(self):
        assert tag_name_errors("two words", 20) == ["Name contains invalid characters"]

    @pytest.mark.parametrize("name", ["a/b", "a#b", "a?b", "a,b", "a.b"])
    def test_reserved_characters(self, name):
        assert tag_name_errors(name, 20) == ["Name contains invalid characters"]

    def test_blank(self):
        assert tag_name_errors("  ", 20) == ["Name can't be blank"]

    def test_multiple_problems(self):
        assert len(tag_name_errors("bad name " * 5, 20)) == 2


# ---------------------------------------------------------------------------
# DiscourseDbPlatform: checks that run before any SQL
# ---------------------------------------------------------------------------

class TestDiscourseDbPlatformGuards:
    def _platform(self, **kwargs) -> tuple[DiscourseDbPlatform, MagicMock]:
        conn = MagicMock()
        return DiscourseDbPlatform(conn, RateLimiter(base_delay=0.0, jitter=0.0), **kwargs), conn

    def test_find_user_blank_email_skips_query(self):
        platform, conn = self._platform()
        assert platform.find_user_by_email("   ") is None
        conn.execute.assert_not_called()

    def test_find_user_lowercases_email(self):
        platform, conn = self._platform()
        conn.execute.return_value.fetchone.return_value = (7, "asker", "asker@example.com")
        user = platform.find_user_by_email(" Asker@Example.com ")
        assert user == USER
        assert conn.execute.call_args[0][1] == ("asker@example.com",)

    def test_existing_tag_names_empty_skips_query(self):
        platform, conn = self._platform()
        assert platform.existing_tag_names([]) == []
        conn.execute.assert_not_called()

    def test_existing_tag_names_keeps_request_order(self):
        platform, conn = self._platform()
        conn.execute.return_value.fetchall.return_value = [("email",), ("accounts",)]
        assert platform.existing_tag_names(["accounts", "billing", "email"]) == ["accounts", "email"]

    def test_invalid_tag_rejected_before_insert(self):
        platform, conn = self._platform(max_tag_length=5)
        with pytest.raises(PlatformError, match="too long"):
            platform.create_tag("much-too-long")
        conn.transaction.assert_not_called()

    def test_short_title_rejected_outside_import_mode(self):
        platform, conn = self._platform(min_topic_title_length=15)
        with pytest.raises(PlatformError, match="too short"):
            platform.create_topic(
                USER, title="Help", raw="body", category_id=1,
                created_at=datetime(2024, 3, 5, 14, 30),
            )
        conn.transaction.assert_not_called()

    def test_blank_title_rejected_even_in_import_mode(self):
        platform, _ = self._platform()
        with pytest.raises(PlatformError, match="blank"):
            platform.create_topic(
                USER, title="  ", raw="body", category_id=1,
                created_at=datetime(2024, 3, 5, 14, 30), import_mode=True,
            )

    def test_blank_post_rejected(self):
        platform, conn = self._platform()
        topic = CreatedTopic(id=1, title="T", user_id=7, category_id=1)
        with pytest.raises(PlatformError, match="Body can't be blank"):
            platform.create_post(USER, topic=topic, raw=" \n ", created_at=datetime(2024, 3, 5))
        conn.transaction.assert_not_called()
