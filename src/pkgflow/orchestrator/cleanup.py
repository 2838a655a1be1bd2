"""Periodic cleanup of the shared scratch area."""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from pkgflow.orchestrator.models import CleanupSummary

logger = logging.getLogger(__name__)


class ScratchCleaner:
    """Deletes top-level scratch entries that are not protected.

    An entry is protected when it lies under a protected path or contains
    one. With ``min_age_seconds > 0`` entries modified within that window
    are kept, which avoids deleting directories of running executions.
    """

    def __init__(
        self,
        *,
        scratch_root: Path,
        protected_paths: Iterable[Path] = (),
        min_age_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if min_age_seconds < 0:
            raise ValueError("Cleanup grace window must be >= 0 seconds.")
        self.scratch_root = scratch_root
        self.protected_paths = tuple(_absolute(path) for path in protected_paths)
        self.min_age_seconds = min_age_seconds
        self._clock = clock

    def cleanup(self) -> CleanupSummary:
        summary = CleanupSummary()
        if not self.scratch_root.is_dir():
            logger.info("Scratch root %s does not exist, nothing to clean", self.scratch_root)
            return summary

        now = self._clock()
        for entry in sorted(self.scratch_root.iterdir()):
            if self._is_protected(entry):
                summary.protected += 1
                continue
            try:
                if self.min_age_seconds > 0:
                    age = now - entry.lstat().st_mtime
                    if age < self.min_age_seconds:
                        summary.recent += 1
                        continue
                _remove(entry)
            except FileNotFoundError:
                continue
            except OSError as error:
                summary.errors += 1
                logger.error("Failed to remove scratch entry %s: %s", entry, error)
                continue
            summary.removed += 1
            summary.removed_paths.append(str(entry))

        logger.info(
            "Scratch cleanup of %s: removed=%d protected=%d recent=%d errors=%d",
            self.scratch_root,
            summary.removed,
            summary.protected,
            summary.recent,
            summary.errors,
        )
        return summary

    def _is_protected(self, entry: Path) -> bool:
        candidate = _absolute(entry)
        return any(
            candidate.is_relative_to(protected) or protected.is_relative_to(candidate)
            for protected in self.protected_paths
        )


def _absolute(path: Path) -> Path:
    return Path(path).expanduser().absolute()


def _remove(entry: Path) -> None:
    if entry.is_symlink() or not entry.is_dir():
        entry.unlink()
        return
    shutil.rmtree(entry)
