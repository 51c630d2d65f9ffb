"""Report persistence helpers."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def slugify(text: str, max_length: int = 50) -> str:
    """Filesystem-safe name derived from free text."""
    slug = re.sub(r"[^\w\s-]", "", text[:max_length]).strip()
    slug = re.sub(r"[\s-]+", "_", slug)
    return slug or "research"


def unique_path(directory: Path, base: str, suffix: str = ".md") -> Path:
    """First ``base{suffix}``, ``base_1{suffix}``, ... that does not exist yet."""
    path = directory / f"{base}{suffix}"
    if not path.exists():
        return path
    for i in range(1, 10_000):
        candidate = directory / f"{base}_{i}{suffix}"
        if not candidate.exists():
            return candidate
    raise RuntimeError("Failed to allocate a unique report filename after 10,000 attempts")


def save_report(
    report: str,
    directory: Path,
    prefix: str = "research",
    metadata: dict[str, Any] | None = None,
) -> Path:
    """Save a markdown report with an optional JSON metadata sidecar.

    Args:
        report: Markdown report.
        directory: Target directory, created if missing.
        prefix: Free text used in the filename (usually the query).
        metadata: Saved next to the report as ``<name>.json`` when given.

    Returns:
        Path to the saved report.
    """
    directory.mkdir(parents=True, exist_ok=True)
    # Microseconds keep names unique when several reports finish in the same second.
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    file_path = unique_path(directory, f"{timestamp}_{slugify(prefix, 30)}")
    file_path.write_text(report, encoding="utf-8")

    if metadata:
        meta_path = file_path.with_suffix(".json")
        meta_full = {
            "timestamp": datetime.now().isoformat(),
            "file": file_path.name,
            **metadata,
        }
        meta_path.write_text(json.dumps(meta_full, indent=2, default=str), encoding="utf-8")

    logger.info(f"Saved report to {file_path}")
    return file_path
