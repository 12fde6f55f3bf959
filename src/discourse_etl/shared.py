"""discourse_etl.shared

Shared utilities for the topic importer: CSV location and reading, the
plain-text run log, run counters, report writing, and the run-wide guards
that suspend rate limiting and quiet logging.
"""

from __future__ import annotations

import csv
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from discourse_etl.platform import RateLimiter


# ---------------------------------------------------------------------------
# CSV location + reading
# ---------------------------------------------------------------------------

def locate_csv(path: Path) -> Path:
    """Return path itself if it is a file, else the newest *.csv inside it.

    Raises FileNotFoundError when the path is missing or holds no CSV.
    """
    if path.is_file():
        return path
    if path.is_dir():
        candidates = [p for p in path.glob("*.csv") if p.is_file()]
        if not candidates:
            raise FileNotFoundError(f"no .csv files found in {path}")
        return max(candidates, key=lambda p: p.stat().st_mtime)
    raise FileNotFoundError(f"{path} does not exist")


def normalize_headers(raw: dict[str, str]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped."""
    return {(k or "").strip(): v for k, v in raw.items()}


def iter_csv_rows(path: Path) -> Iterator[tuple[int, dict[str, str]]]:
    """Yield (row_number, row) lazily. Row 1 is the header, so data starts at 2."""
    with path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        for row_number, raw_row in enumerate(reader, start=2):
            yield row_number, normalize_headers(raw_row)


def count_csv_rows(path: Path) -> int:
    with path.open(encoding="utf-8-sig", newline="") as fh:
        return sum(1 for _ in csv.DictReader(fh))


def read_csv_headers(path: Path) -> list[str]:
    with path.open(encoding="utf-8-sig", newline="") as fh:
        return [h.strip() for h in (csv.DictReader(fh).fieldnames or [])]


# ---------------------------------------------------------------------------
# ImportLog
# ---------------------------------------------------------------------------

class ImportLog:
    """Plain-text log of skipped/errored rows, overwritten each run.

    Opened eagerly so an unusable destination fails before any row is
    processed. Use as a context manager to guarantee close.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self.lines_written = 0

    def open(self, started_at: datetime | None = None) -> ImportLog:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self._path, "w", encoding="utf-8")
        stamp = (started_at or datetime.now()).isoformat(sep=" ", timespec="seconds")
        self._fh.write(f"Import Errors - {stamp}\n\n")
        self._fh.flush()
        return self

    def write(self, line: str) -> None:
        if self._fh is None:
            raise RuntimeError("ImportLog.write() called before open()")
        self._fh.write(line.rstrip("\n") + "\n")
        self._fh.flush()
        self.lines_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None

    @property
    def path(self) -> Path:
        return self._path

    def __enter__(self) -> ImportLog:
        if self._fh is None:
            self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_imported: int = 0
    rows_skipped: int = 0
    rows_errored: int = 0
    rows_would_import: int = 0
    missing_field_skips: int = 0
    users_not_found: int = 0
    tags_created: int = 0
    tag_create_failures: int = 0
    topics_created: int = 0
    topics_rolled_back: int = 0
    posts_created: int = 0
    rollback_failures: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


# ---------------------------------------------------------------------------
# Run-wide guards
# ---------------------------------------------------------------------------

@contextmanager
def rate_limits_suspended(limiter: RateLimiter) -> Iterator[RateLimiter]:
    """Disable the limiter for the block; always re-enable it afterwards."""
    limiter.disable()
    try:
        yield limiter
    finally:
        limiter.enable()


@contextmanager
def log_level_lowered(
    level: int = logging.CRITICAL,
    logger: logging.Logger | None = None,
) -> Iterator[logging.Logger]:
    """Raise the threshold of logger (root by default) to level for the block.

    The previous level is restored on every exit path.
    """
    target = logger or logging.getLogger()
    previous = target.level
    target.setLevel(level)
    try:
        yield target
    finally:
        target.setLevel(previous)
