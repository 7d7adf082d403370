"""Sweeper for finished render outputs that nobody downloaded."""

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    deleted: int = 0
    freed_bytes: int = 0
    errors: int = 0


def _entry_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


def clean_old_outputs(output_dir: str | Path, max_age_s: float, now: float | None = None) -> CleanupReport:
    """
    Delete files and directories in ``output_dir`` last modified more than
    ``max_age_s`` seconds ago.

    Only direct children are considered; a directory is removed as a whole.
    Entries that cannot be removed are logged and skipped so the sweep never
    blocks a render.

    Args:
        output_dir: Directory holding finished outputs
        max_age_s: Age cutoff in seconds
        now: Reference timestamp (defaults to the current time)

    Returns:
        Counts of removed entries, bytes freed and failures
    """
    report = CleanupReport()
    output_dir = Path(output_dir)
    if not output_dir.is_dir():
        return report

    cutoff = (now if now is not None else time.time()) - max_age_s
    for entry in output_dir.iterdir():
        try:
            if entry.stat().st_mtime >= cutoff:
                continue
            size = _entry_size(entry)
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        except OSError as e:
            report.errors += 1
            logger.warning(f"[CLEANUP] Failed to remove {entry}: {e}")
            continue
        report.deleted += 1
        report.freed_bytes += size

    if report.deleted:
        logger.info(
            f"[CLEANUP] Removed {report.deleted} old outputs from {output_dir} "
            f"({report.freed_bytes / (1024 * 1024):.1f} MB)"
        )
    return report
