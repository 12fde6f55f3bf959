"""discourse_etl.discourse_db

Platform backend that writes straight into a Discourse PostgreSQL database,
the same way Discourse's own bulk importers do.

Design notes:
  - Autocommit connection; every write call runs in its own short
    transaction, so a row that fails half-way leaves committed siblings
    behind and the importer removes them explicitly (destroy_*).
  - Topic and post counters (posts_count, highest_post_number,
    last_posted_at, bumped_at) are kept consistent on create/destroy.
  - cooked is a plain escaped rendering of raw. Rebake posts and run
    `rake import:ensure_consistency` after a large import.
  - Any psycopg error from a write is re-raised as PlatformError.
"""

from __future__ import annotations

import html
import logging
import re
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

import psycopg
from psycopg import errors

from discourse_etl.normalize import normalize_email, normalize_space, slug_name
from discourse_etl.platform import (
    CreatedPost,
    CreatedTopic,
    PlatformError,
    PlatformUser,
    RateLimiter,
)

log = logging.getLogger(__name__)

EXCERPT_LENGTH = 220

# Characters DiscourseTagging strips from tag names.
_TAG_DISALLOWED_RE = re.compile(r"[/?#\[\]@!$&'()*+,;=.%\\`^|{}\"<>\s]")


def render_cooked(raw: str) -> str:
    """Minimal cooked HTML: one <p> per blank-line separated paragraph."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", raw) if p.strip()]
    return "\n".join(
        "<p>" + html.escape(p).replace("\n", "<br>") + "</p>" for p in paragraphs
    )


def tag_name_errors(name: str, max_length: int) -> list[str]:
    """Return validation messages for a proposed tag name (empty when valid)."""
    problems: list[str] = []
    if not name or not name.strip():
        problems.append("Name can't be blank")
        return problems
    if len(name) > max_length:
        problems.append(f"Name is too long (maximum is {max_length} characters)")
    if _TAG_DISALLOWED_RE.search(name):
        problems.append("Name contains invalid characters")
    return problems


class DiscourseDbPlatform:
    """Platform implementation over a psycopg connection to Discourse's DB."""

    def __init__(
        self,
        conn: psycopg.Connection,
        rate_limiter: RateLimiter | None = None,
        max_tag_length: int = 20,
        min_topic_title_length: int = 15,
    ) -> None:
        self._conn = conn
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_tag_length = max_tag_length
        self.min_topic_title_length = min_topic_title_length

    @classmethod
    def connect(cls, dsn: str, **kwargs) -> DiscourseDbPlatform:
        return cls(psycopg.connect(dsn, autocommit=True), **kwargs)

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _writing(self, action: str) -> Iterator[psycopg.Connection]:
        try:
            with self._conn.transaction():
                yield self._conn
        except errors.UniqueViolation as exc:
            log.debug("%s: unique violation: %s", action, exc)
            raise PlatformError("Name has already been taken") from exc
        except psycopg.Error as exc:
            log.debug("%s failed: %s", action, exc)
            raise PlatformError(f"{action} failed: {exc}") from exc

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------

    def category_exists(self, category_id: int) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM categories WHERE id = %s", (category_id,)
        ).fetchone()
        return row is not None

    def find_user_by_email(self, email: str | None) -> PlatformUser | None:
        email_norm = normalize_email(email)
        if email_norm is None:
            return None
        row = self._conn.execute(
            """
            SELECT u.id, u.username, ue.email
            FROM users u
            JOIN user_emails ue ON ue.user_id = u.id
            WHERE ue.email = %s
            ORDER BY ue."primary" DESC, u.id ASC
            LIMIT 1
            """,
            (email_norm,),
        ).fetchone()
        if row is None:
            return None
        return PlatformUser(id=row[0], username=row[1], email=row[2])

    def existing_tag_names(self, names: list[str]) -> list[str]:
        if not names:
            return []
        rows = self._conn.execute(
            "SELECT name FROM tags WHERE name = ANY(%s)", (list(names),)
        ).fetchall()
        found = {r[0] for r in rows}
        return [n for n in names if n in found]

    # -----------------------------------------------------------------------
    # Tags
    # -----------------------------------------------------------------------

    def create_tag(self, name: str) -> None:
        problems = tag_name_errors(name, self.max_tag_length)
        if problems:
            raise PlatformError(problems)
        self.rate_limiter.sleep()
        with self._writing(f"create tag {name!r}") as conn:
            conn.execute(
                "INSERT INTO tags (name, created_at, updated_at) VALUES (%s, now(), now())",
                (name,),
            )

    def destroy_tag(self, name: str) -> None:
        with self._writing(f"destroy tag {name!r}") as conn:
            conn.execute(
                "DELETE FROM topic_tags WHERE tag_id IN (SELECT id FROM tags WHERE name = %s)",
                (name,),
            )
            conn.execute("DELETE FROM tags WHERE name = %s", (name,))

    def tag_topic(self, topic: CreatedTopic, user: PlatformUser, names: list[str]) -> list[str]:
        if not names:
            return []
        with self._writing(f"tag topic {topic.id}") as conn:
            rows = conn.execute(
                "SELECT id, name FROM tags WHERE name = ANY(%s)", (list(names),)
            ).fetchall()
            by_name = {r[1]: r[0] for r in rows}
            for name in names:
                tag_id = by_name.get(name)
                if tag_id is None:
                    continue
                conn.execute(
                    """
                    INSERT INTO topic_tags (topic_id, tag_id, created_at, updated_at)
                    VALUES (%s, %s, now(), now())
                    ON CONFLICT (topic_id, tag_id) DO NOTHING
                    """,
                    (topic.id, tag_id),
                )
        return [n for n in names if n not in by_name]

    def untag_topic(self, topic: CreatedTopic) -> None:
        with self._writing(f"untag topic {topic.id}") as conn:
            conn.execute("DELETE FROM topic_tags WHERE topic_id = %s", (topic.id,))

    # -----------------------------------------------------------------------
    # Topics
    # -----------------------------------------------------------------------

    def create_topic(
        self,
        user: PlatformUser,
        *,
        title: str,
        raw: str,
        category_id: int,
        created_at: datetime,
        import_mode: bool = False,
    ) -> CreatedTopic:
        title = normalize_space(title) or ""
        if not title:
            raise PlatformError("Title can't be blank")
        if not import_mode:
            if len(title) < self.min_topic_title_length:
                raise PlatformError(
                    f"Title is too short (minimum is {self.min_topic_title_length} characters)"
                )
            self.rate_limiter.sleep()
        slug = slug_name(title) or "topic"
        excerpt = (normalize_space(raw) or "")[:EXCERPT_LENGTH]
        with self._writing(f"create topic {title!r}") as conn:
            row = conn.execute(
                """
                INSERT INTO topics (
                    title, fancy_title, slug, user_id, last_post_user_id,
                    category_id, archetype, excerpt, visible,
                    posts_count, highest_post_number,
                    created_at, updated_at, bumped_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, 'regular', %s, true, 0, 0, %s, %s, %s)
                RETURNING id
                """,
                (
                    title, html.escape(title), slug, user.id, user.id,
                    category_id, excerpt,
                    created_at, created_at, created_at,
                ),
            ).fetchone()
        log.debug("created topic %s for user %s", row[0], user.username)
        return CreatedTopic(id=row[0], title=title, user_id=user.id, category_id=category_id)

    def destroy_topic(self, topic: CreatedTopic) -> None:
        with self._writing(f"destroy topic {topic.id}") as conn:
            conn.execute("DELETE FROM posts WHERE topic_id = %s", (topic.id,))
            conn.execute("DELETE FROM topic_tags WHERE topic_id = %s", (topic.id,))
            conn.execute("DELETE FROM topics WHERE id = %s", (topic.id,))

    # -----------------------------------------------------------------------
    # Posts
    # -----------------------------------------------------------------------

    def create_post(
        self,
        user: PlatformUser,
        *,
        topic: CreatedTopic,
        raw: str,
        created_at: datetime,
    ) -> CreatedPost:
        if not raw or not raw.strip():
            raise PlatformError("Body can't be blank")
        self.rate_limiter.sleep()
        with self._writing(f"create post in topic {topic.id}") as conn:
            counter = conn.execute(
                "SELECT highest_post_number FROM topics WHERE id = %s FOR UPDATE",
                (topic.id,),
            ).fetchone()
            if counter is None:
                raise PlatformError(f"Topic {topic.id} does not exist")
            post_number = counter[0] + 1
            row = conn.execute(
                """
                INSERT INTO posts (
                    user_id, topic_id, post_number, sort_order, raw, cooked,
                    created_at, updated_at, last_version_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    user.id, topic.id, post_number, post_number, raw, render_cooked(raw),
                    created_at, created_at, created_at,
                ),
            ).fetchone()
            conn.execute(
                """
                UPDATE topics
                SET posts_count = posts_count + 1,
                    highest_post_number = %s,
                    last_post_user_id = %s,
                    last_posted_at = %s,
                    bumped_at = GREATEST(bumped_at, %s)
                WHERE id = %s
                """,
                (post_number, user.id, created_at, created_at, topic.id),
            )
        return CreatedPost(id=row[0], topic_id=topic.id, post_number=post_number, user_id=user.id)

    def destroy_post(self, post: CreatedPost) -> None:
        with self._writing(f"destroy post {post.id}") as conn:
            deleted = conn.execute(
                "DELETE FROM posts WHERE id = %s RETURNING id", (post.id,)
            ).fetchone()
            if deleted is None:
                return
            conn.execute(
                """
                UPDATE topics t
                SET posts_count = GREATEST(t.posts_count - 1, 0),
                    highest_post_number = COALESCE(
                        (SELECT max(p.post_number) FROM posts p WHERE p.topic_id = t.id), 0
                    )
                WHERE t.id = %s
                """,
                (post.topic_id,),
            )
