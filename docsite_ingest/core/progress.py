"""
Shared progress counters for a crawl run.

Every stage reports through one ProgressTracker so the log reads as a
single ``[current/total]`` sequence across pages and images. ``total`` only
grows as work is discovered; ``current`` moves once per attempted unit,
including skips and failures.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from docsite_ingest.core.errors import ProgressInvariantError

logger = logging.getLogger(__name__)

LogFn = Callable[[str], None]


def progress_bar(current: int, total: int, width: int = 20) -> str:
    """Render ``[████░░░░]``; a non-positive total is treated as 1."""
    safe_total = 1 if total <= 0 else total
    filled = min(max(round((current / safe_total) * width), 0), width)
    return "[" + "█" * filled + "░" * (width - filled) + "]"


class ProgressTracker:
    """
    Mutable counters with an invariant check on every mutation.

    Violations of ``0 <= current <= total`` are logged at error level and
    kept in ``violations``; with ``strict=True`` they raise
    ProgressInvariantError instead.
    """

    def __init__(
        self,
        total: int = 0,
        *,
        strict: bool = False,
        log: Optional[LogFn] = None,
    ) -> None:
        if total < 0:
            raise ValueError("total cannot be negative")
        self.current = 0
        self.total = total
        self.pages_processed = 0
        self.images_processed = 0
        self.strict = strict
        self.violations: list[str] = []
        self._log = log

    def add_total(self, count: int) -> None:
        if count < 0:
            raise ValueError("total can only grow")
        self.total += count
        self.check_invariant("add_total")

    def mark_attempt(self, reason: str, icon: str = "", message: str = "") -> None:
        self.current += 1
        self.check_invariant(reason)
        if message:
            self.log_progress(icon, message)

    def mark_page(self) -> None:
        self.pages_processed += 1

    def mark_image(self) -> None:
        self.images_processed += 1

    def check_invariant(self, reason: str = "") -> None:
        problems = []
        if self.current > self.total:
            problems.append(f"current ({self.current}) > total ({self.total})")
        if self.current < 0:
            problems.append(f"current is negative ({self.current})")
        if self.total < 0:
            problems.append(f"total is negative ({self.total})")
        if not problems:
            return

        context = f" ({reason})" if reason else ""
        for problem in problems:
            message = f"Progress invariant violated{context}: {problem}"
            self.violations.append(message)
            logger.error(message)
            if self.strict:
                raise ProgressInvariantError(message)

    def format_line(self, icon: str, message: str) -> str:
        bar = progress_bar(self.current, self.total)
        prefix = f"{bar} [{self.current}/{self.total}]"
        return f"{prefix} {icon} {message}" if icon else f"{prefix} {message}"

    def log_progress(self, icon: str, message: str) -> None:
        line = self.format_line(icon, message)
        if self._log is not None:
            self._log(line)
        else:
            logger.info(line)

    def snapshot(self) -> dict:
        return {
            "current": self.current,
            "total": self.total,
            "pagesProcessed": self.pages_processed,
            "imagesProcessed": self.images_processed,
        }
