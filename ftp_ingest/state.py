"""Incremental state: the watermark (``last_path``) between runs.

The watermark is a remote path, compared as a plain string. A run selects
only files whose path sorts strictly after it, and the next watermark is
the greatest path the run selected.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

logger = logging.getLogger(__name__)

__all__ = [
    "clear_all_watermarks",
    "delete_watermark",
    "get_watermark",
    "list_watermarks",
    "next_watermark",
    "save_watermark",
]


def next_watermark(
    incremental: bool,
    prior_watermark: Optional[str],
    selection: Sequence[str],
) -> Optional[str]:
    """Watermark to hand to the next run.

    Args:
        incremental: Whether incremental mode is on; if not, nothing is emitted
        prior_watermark: The watermark this run started from
        selection: Paths selected by this run, in any order

    Returns:
        The lexicographic maximum of ``selection``, or ``prior_watermark``
        unchanged when nothing was selected, or None when not incremental
    """
    if not incremental:
        return None
    if not selection:
        return prior_watermark
    return max(selection)


DEFAULT_STATE_DIR = ".state"


def _get_state_dir() -> Path:
    state_dir = os.environ.get("FTP_INGEST_STATE_DIR", DEFAULT_STATE_DIR)
    return Path(state_dir)


def _get_watermark_path(name: str) -> Path:
    safe_name = name.replace("/", "_").replace("\\", "_")
    return _get_state_dir() / f"{safe_name}_watermark.json"


def get_watermark(name: str) -> Optional[str]:
    """Return the last saved watermark for a job, if any."""

    path = _get_watermark_path(name)

    if not path.exists():
        logger.debug("No watermark found for %s", name)
        return None

    try:
        data = json.loads(path.read_text())
        value = data.get("last_path")
        logger.debug(
            "Found watermark for %s: %s (updated %s)",
            name,
            value,
            data.get("updated_at", "unknown"),
        )
        return value
    except (json.JSONDecodeError, AttributeError) as exc:
        logger.warning("Invalid watermark file for %s: %s", name, exc)
        return None


def save_watermark(name: str, value: str) -> None:
    """Persist a new watermark for a job."""

    state_dir = _get_state_dir()
    state_dir.mkdir(parents=True, exist_ok=True)

    path = _get_watermark_path(name)
    data = {
        "name": name,
        "last_path": value,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }

    path.write_text(json.dumps(data, indent=2))
    logger.info("Saved watermark for %s: %s", name, value)


def delete_watermark(name: str) -> bool:
    """Remove a job's watermark file. Returns False if there was none."""

    path = _get_watermark_path(name)

    if path.exists():
        path.unlink()
        logger.info("Deleted watermark for %s", name)
        return True

    return False


def list_watermarks() -> Dict[str, Dict[str, Any]]:
    """All stored watermark entries, keyed by job name."""

    state_dir = _get_state_dir()

    if not state_dir.exists():
        return {}

    watermarks: Dict[str, Dict[str, Any]] = {}

    for path in sorted(state_dir.glob("*_watermark.json")):
        try:
            data = json.loads(path.read_text())
            watermarks[data.get("name", path.stem)] = data
        except (json.JSONDecodeError, AttributeError) as exc:
            logger.warning("Invalid watermark file %s: %s", path, exc)

    return watermarks


def clear_all_watermarks() -> int:
    """Delete every watermark file. Returns how many were removed."""

    state_dir = _get_state_dir()

    if not state_dir.exists():
        return 0

    count = 0
    for path in state_dir.glob("*_watermark.json"):
        path.unlink()
        count += 1

    logger.info("Cleared %d watermarks", count)
    return count
