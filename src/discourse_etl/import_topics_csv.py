"""discourse_etl.import_topics_csv

CSV → Discourse topic importer.

Each CSV row becomes one topic, its opening post and one reply, with the
row's tags attached and its category set. Rows are independent: a row
that fails is skipped (and anything already created for it is removed)
without affecting the rest of the run.

Layouts (--layout):
  full          every column present; dates as DD/MM/YYYY HH:MM
  content_only  title / body / tags / answer only; category, users and
                timestamps come from config defaults and the clock

Usage:
    DISCOURSE_DB_DSN="postgresql://discourse@localhost/discourse" \\
    python -m discourse_etl.import_topics_csv \\
        --csv-path "imports/Topic_Importer_Data.csv" \\
        --log-path "artifacts/import_errors.log"

    python -m discourse_etl.import_topics_csv \\
        --config config/import.yml --layout content_only --csv-path imports/

Processing order per row:
  1.  Validate + normalize fields (category existence is the only lookup)
  2.  Resolve creator + replier by email
  3.  Ensure tags exist (create missing ones; failures don't abort)
  4.  Create topic (import mode)   on failure: skip
  5.  Attach tags                  on failure: destroy topic, skip
  6.  Create opening post          on failure: destroy topic, skip
  7.  Create reply                 on failure: destroy topic + post, skip
"""

from __future__ import annotations

import enum
import logging
import os
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

import click
import psycopg

from discourse_etl.config import (
    LAYOUT_CONTENT_ONLY,
    LAYOUT_FULL,
    VALID_LAYOUTS,
    ConfigError,
    ImportConfig,
    load_config,
)
from discourse_etl.discourse_db import DiscourseDbPlatform
from discourse_etl.normalize import (
    normalize_email,
    parse_datetime,
    parse_positive_int,
    split_tags,
    trim,
)
from discourse_etl.platform import (
    CreatedPost,
    CreatedTopic,
    Platform,
    PlatformError,
    PlatformUser,
    RateLimiter,
)
from discourse_etl.shared import (
    ImportLog,
    RunCounters,
    count_csv_rows,
    iter_csv_rows,
    locate_csv,
    log_level_lowered,
    rate_limits_suspended,
    read_csv_headers,
    write_run_report,
)

log = logging.getLogger(__name__)

MODE = "topic_import"

# ---------------------------------------------------------------------------
# Columns
# ---------------------------------------------------------------------------

COL_TITLE = "Topic_Title"
COL_BODY = "Topic_Main_Post"
COL_CREATOR_EMAIL = "Topic_Main_Post_User_Email"
COL_CATEGORY_ID = "Topic_Category_ID"
COL_TAGS = "Topic_Tags"
COL_CREATED_AT = "Topic_Main_Post_DateTime"
COL_REPLY = "Topic_Post_Answer"
COL_REPLIER_EMAIL = "Topic_Post_Answer_User_Email"
COL_REPLY_CREATED_AT = "Topic_Post_Answer_DateTime"

FULL_COLUMNS = (
    COL_TITLE,
    COL_BODY,
    COL_CREATOR_EMAIL,
    COL_CATEGORY_ID,
    COL_TAGS,
    COL_CREATED_AT,
    COL_REPLY,
    COL_REPLIER_EMAIL,
    COL_REPLY_CREATED_AT,
)
CONTENT_ONLY_COLUMNS = (COL_TITLE, COL_BODY, COL_TAGS, COL_REPLY)

# Topic_Tags is optional in both layouts.
REQUIRED_FIELDS = {
    LAYOUT_FULL: tuple(c for c in FULL_COLUMNS if c != COL_TAGS),
    LAYOUT_CONTENT_ONLY: (COL_TITLE, COL_BODY, COL_CATEGORY_ID, COL_REPLY),
}


# ---------------------------------------------------------------------------
# Row model
# ---------------------------------------------------------------------------

@dataclass
class TopicRow:
    title: str
    body: str
    tags: list[str]
    category_id: int
    creator_email: str
    replier_email: str
    created_at: datetime
    reply: str
    reply_created_at: datetime


class RowOutcome(enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"
    WOULD_IMPORT = "would_import"


@dataclass
class RowResult:
    outcome: RowOutcome
    reason: str | None = None


@dataclass
class TagResolution:
    names: list[str]
    created: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_row(
    row: dict[str, str],
    platform: Platform,
    config: ImportConfig,
    now: datetime | None = None,
) -> tuple[TopicRow | None, list[str]]:
    """Extract and normalize one row.

    Returns (TopicRow, []) when every required field is usable, else
    (None, missing_fields) naming every missing/invalid column in column
    order. The category-existence check is the only platform call.
    """
    title = trim(row.get(COL_TITLE))
    body = trim(row.get(COL_BODY))
    reply = trim(row.get(COL_REPLY))
    tags = split_tags(row.get(COL_TAGS), config.tag_delimiter)

    if config.layout == LAYOUT_CONTENT_ONLY:
        category_id = config.default_category_id
        creator_email = normalize_email(config.default_creator_email)
        replier_email = normalize_email(config.default_replier_email)
        created_at = reply_created_at = now or datetime.now()
    else:
        category_id = parse_positive_int(row.get(COL_CATEGORY_ID))
        creator_email = normalize_email(row.get(COL_CREATOR_EMAIL))
        replier_email = normalize_email(row.get(COL_REPLIER_EMAIL))
        created_at = parse_datetime(row.get(COL_CREATED_AT), config.datetime_format)
        reply_created_at = parse_datetime(row.get(COL_REPLY_CREATED_AT), config.datetime_format)

    category_ok = category_id is not None and platform.category_exists(category_id)

    checks = [
        (COL_TITLE, title is not None),
        (COL_BODY, body is not None),
        (COL_CREATOR_EMAIL, creator_email is not None),
        (COL_CATEGORY_ID, category_ok),
        (COL_CREATED_AT, created_at is not None),
        (COL_REPLY, reply is not None),
        (COL_REPLIER_EMAIL, replier_email is not None),
        (COL_REPLY_CREATED_AT, reply_created_at is not None),
    ]
    required = REQUIRED_FIELDS[config.layout]
    missing = [name for name, ok in checks if not ok and name in required]
    if missing:
        return None, missing

    return (
        TopicRow(
            title=title,
            body=body,
            tags=tags,
            category_id=category_id,
            creator_email=creator_email,
            replier_email=replier_email,
            created_at=created_at,
            reply=reply,
            reply_created_at=reply_created_at,
        ),
        [],
    )


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

def ensure_tags_exist(
    platform: Platform,
    tags: list[str],
    counters: RunCounters,
) -> TagResolution:
    """Create any requested tags that don't exist yet.

    Returned names are existing + new, including names whose creation
    failed: downstream tagging receives every requested name.
    """
    if not tags:
        return TagResolution(names=[])

    existing = platform.existing_tag_names(tags)
    new_tags = [t for t in tags if t not in existing]
    resolution = TagResolution(names=existing + new_tags)

    for name in new_tags:
        try:
            platform.create_tag(name)
        except PlatformError as exc:
            counters.tag_create_failures += 1
            resolution.failed.append(name)
            click.echo(f"Failed to create tag: {name} - {exc}", err=True)
            continue
        counters.tags_created += 1
        resolution.created.append(name)
        click.echo(f"Created new tag: {name}")

    return resolution


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

def _rollback(
    platform: Platform,
    row_number: int,
    counters: RunCounters,
    topic: CreatedTopic,
    post: CreatedPost | None = None,
    created_tags: list[str] | None = None,
) -> None:
    """Best-effort removal of what this row created. Never raises."""
    steps: list[tuple[str, Callable[[], None]]] = []
    if created_tags is not None:
        steps.append((f"untag topic {topic.id}", lambda: platform.untag_topic(topic)))
    steps.append((f"destroy topic {topic.id}", lambda: platform.destroy_topic(topic)))
    if post is not None:
        steps.append((f"destroy post {post.id}", lambda: platform.destroy_post(post)))
    for name in created_tags or []:
        steps.append((f"destroy tag {name!r}", lambda name=name: platform.destroy_tag(name)))

    for label, step in steps:
        try:
            step()
        except Exception as exc:  # noqa: BLE001
            counters.rollback_failures += 1
            counters.warnings.append(f"row {row_number}: rollback {label} failed: {exc}")
            log.warning("Row %s: rollback %s failed: %s", row_number, label, exc)
    counters.topics_rolled_back += 1


# ---------------------------------------------------------------------------
# Per-row import
# ---------------------------------------------------------------------------

def _skip(import_log: ImportLog, counters: RunCounters, row_number: int, reason: str) -> RowResult:
    import_log.write(f"Skipping row {row_number}: {reason}")
    counters.rows_skipped += 1
    return RowResult(RowOutcome.SKIPPED, reason)


def import_row(
    platform: Platform,
    row_number: int,
    row: dict[str, str],
    config: ImportConfig,
    counters: RunCounters,
    import_log: ImportLog,
    dry_run: bool = False,
) -> RowResult:
    topic_row, missing = validate_row(row, platform, config)
    if topic_row is None:
        counters.missing_field_skips += 1
        return _skip(import_log, counters, row_number, f"Missing {', '.join(missing)}")

    user: PlatformUser | None = platform.find_user_by_email(topic_row.creator_email)
    reply_user: PlatformUser | None = platform.find_user_by_email(topic_row.replier_email)
    if user is None or reply_user is None:
        counters.users_not_found += 1
        return _skip(
            import_log, counters, row_number,
            f"User not found - {topic_row.creator_email} or {topic_row.replier_email}",
        )

    if dry_run:
        existing = platform.existing_tag_names(topic_row.tags)
        new_tags = [t for t in topic_row.tags if t not in existing]
        if new_tags:
            counters.warnings.append(f"row {row_number}: would create tags: {', '.join(new_tags)}")
        counters.rows_would_import += 1
        return RowResult(RowOutcome.WOULD_IMPORT)

    tags = ensure_tags_exist(platform, topic_row.tags, counters)

    try:
        topic = platform.create_topic(
            user,
            title=topic_row.title,
            raw=topic_row.body,
            category_id=topic_row.category_id,
            created_at=topic_row.created_at,
            import_mode=True,
        )
    except PlatformError as exc:
        log.debug("Row %s: topic creation failed: %s", row_number, exc)
        return _skip(import_log, counters, row_number, f"Failed to create topic '{topic_row.title}'")
    counters.topics_created += 1

    if tags.names:
        try:
            unattached = platform.tag_topic(topic, user, tags.names)
        except PlatformError as exc:
            log.debug("Row %s: tagging failed: %s", row_number, exc)
            _rollback(platform, row_number, counters, topic)
            return _skip(
                import_log, counters, row_number,
                f"Failed to tag topic '{topic_row.title}'",
            )
        if unattached:
            counters.warnings.append(
                f"row {row_number}: tags not attached to topic {topic.id}: {', '.join(unattached)}"
            )
            log.warning("Row %s: tags not attached: %s", row_number, unattached)

    try:
        post = platform.create_post(
            user, topic=topic, raw=topic_row.body, created_at=topic_row.created_at
        )
    except PlatformError as exc:
        log.debug("Row %s: main post creation failed: %s", row_number, exc)
        _rollback(platform, row_number, counters, topic)
        return _skip(
            import_log, counters, row_number,
            f"Failed to create main post for topic '{topic_row.title}'",
        )
    counters.posts_created += 1

    try:
        platform.create_post(
            reply_user, topic=topic, raw=topic_row.reply, created_at=topic_row.reply_created_at
        )
    except PlatformError as exc:
        log.debug("Row %s: reply creation failed: %s", row_number, exc)
        created_tags = tags.created if config.layout == LAYOUT_CONTENT_ONLY else None
        _rollback(platform, row_number, counters, topic, post=post, created_tags=created_tags)
        return _skip(
            import_log, counters, row_number,
            f"Failed to add reply to topic '{topic_row.title}'",
        )
    counters.posts_created += 1

    counters.rows_imported += 1
    return RowResult(RowOutcome.SUCCESS)


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def import_topics_from_csv(
    platform: Platform,
    csv_path: Path,
    import_log: ImportLog,
    config: ImportConfig,
    counters: RunCounters,
    dry_run: bool = False,
    on_success: Callable[[], None] | None = None,
) -> int:
    """Import every row of csv_path. Returns the number of rows fully imported.

    Exceptions escaping a single row are logged as
    'Error processing row N: ...' and the run moves on to the next row.
    """
    for row_number, row in iter_csv_rows(csv_path):
        counters.rows_read += 1
        try:
            result = import_row(
                platform, row_number, row, config, counters, import_log, dry_run=dry_run
            )
        except Exception as exc:  # noqa: BLE001
            counters.rows_errored += 1
            result = RowResult(RowOutcome.ERROR, str(exc))
            import_log.write(f"Error processing row {row_number}: {exc}")
        if result.outcome is RowOutcome.SUCCESS and on_success is not None:
            on_success()
    return counters.rows_imported


def run_import(
    platform: Platform,
    config: ImportConfig,
    counters: RunCounters,
    run_id: str,
    dry_run: bool = False,
    show_progress: bool = True,
) -> int:
    """Run a full import with rate limiting suspended and logging quieted.

    Raises FileNotFoundError when no input CSV exists and OSError when the
    log file cannot be opened; both happen before any row is processed.
    """
    csv_path = locate_csv(config.csv_path)
    total_rows = count_csv_rows(csv_path)
    click.echo(f"[{run_id}] Input: {csv_path} ({total_rows} rows, layout={config.layout})")

    expected = FULL_COLUMNS if config.layout == LAYOUT_FULL else CONTENT_ONLY_COLUMNS
    headers = read_csv_headers(csv_path)
    absent = [c for c in expected if c not in headers]
    if absent:
        counters.warnings.append(f"missing columns: {', '.join(absent)}")
        click.echo(f"[{run_id}] WARNING: missing columns: {', '.join(absent)}", err=True)

    import_log = ImportLog(config.log_path).open()
    with import_log, log_level_lowered(), rate_limits_suspended(platform.rate_limiter):
        if show_progress:
            with click.progressbar(length=total_rows, label="Importing Topics") as bar:
                success_count = import_topics_from_csv(
                    platform, csv_path, import_log, config, counters,
                    dry_run=dry_run, on_success=lambda: bar.update(1),
                )
        else:
            success_count = import_topics_from_csv(
                platform, csv_path, import_log, config, counters, dry_run=dry_run,
            )

    if dry_run:
        click.echo(
            f"\n[dry-run] {counters.rows_would_import}/{total_rows} rows would be imported."
        )
    else:
        click.echo(f"\nImport Completed: {success_count}/{total_rows} rows successfully imported.")
    return success_count


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML config file")
@click.option("--csv-path", default=None, type=click.Path(), help="Input CSV, or a directory (newest *.csv is used)")
@click.option("--log-path", default=None, type=click.Path(), help="Plain-text error log, overwritten each run")
@click.option("--layout", default=None, type=click.Choice(list(VALID_LAYOUTS)), help="CSV column layout")
@click.option("--default-category-id", default=None, type=int, help="[content_only] Category for every topic")
@click.option("--default-creator-email", default=None, help="[content_only] Opening post author")
@click.option("--default-replier-email", default=None, help="[content_only] Reply author")
@click.option("--tag-delimiter", default=None, help="Separator inside Topic_Tags (default '|')")
@click.option("--write-delay-seconds", default=None, type=float, help="Pause between writes outside bulk runs")
@click.option("--max-tag-length", default=None, type=int, help="Longest tag name the site accepts")
@click.option("--db-dsn-env", default="DISCOURSE_DB_DSN", show_default=True, help="Env var name holding the Discourse PostgreSQL DSN")
@click.option("--dry-run", is_flag=True, default=False, help="Validate and resolve only; create nothing")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False)
def main(
    config_path: str | None,
    csv_path: str | None,
    log_path: str | None,
    layout: str | None,
    default_category_id: int | None,
    default_creator_email: str | None,
    default_replier_email: str | None,
    tag_delimiter: str | None,
    write_delay_seconds: float | None,
    max_tag_length: int | None,
    db_dsn_env: str,
    dry_run: bool,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Import Discourse topics, opening posts and replies from a CSV file."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = RunCounters()

    try:
        config = load_config(
            Path(config_path) if config_path else None,
            csv_path=csv_path,
            log_path=log_path,
            layout=layout,
            default_category_id=default_category_id,
            default_creator_email=default_creator_email,
            default_replier_email=default_replier_email,
            tag_delimiter=tag_delimiter,
            write_delay_seconds=write_delay_seconds,
            max_tag_length=max_tag_length,
        )
    except (ConfigError, FileNotFoundError) as e:
        click.echo(f"[{run_id}] FATAL: invalid configuration: {e}", err=True)
        sys.exit(1)

    # Credentials come from the environment, never from CLI args
    db_dsn = os.environ.get(db_dsn_env, "")
    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: env var {db_dsn_env} must be set", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Starting {MODE} run (dry_run={dry_run})")
    log.info("Starting topic import from CSV...")

    try:
        platform = DiscourseDbPlatform.connect(
            db_dsn,
            rate_limiter=RateLimiter(base_delay=config.write_delay_seconds),
            max_tag_length=config.max_tag_length,
        )
    except psycopg.Error as e:
        click.echo(f"[{run_id}] FATAL: cannot connect to database ({db_dsn_env}): {e}", err=True)
        sys.exit(1)
    try:
        run_import(platform, config, counters, run_id, dry_run=dry_run)
    except FileNotFoundError as e:
        click.echo(f"[{run_id}] FATAL: {e}", err=True)
        sys.exit(1)
    except UnicodeDecodeError as e:
        click.echo(f"[{run_id}] FATAL: input is not valid UTF-8: {e}", err=True)
        sys.exit(1)
    except OSError as e:
        click.echo(f"[{run_id}] FATAL: cannot access {e.filename or config.log_path}: {e}", err=True)
        sys.exit(1)
    finally:
        platform.close()

    log.info("CSV import completed. Check the log file at %s for errors.", config.log_path)
    report_path = write_run_report(
        run_id, started_at, MODE, dry_run,
        {"csv_path": str(config.csv_path), "log_path": str(config.log_path)},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
