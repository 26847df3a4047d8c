"""YAML job loader.

A job names one FTP source, where its files land, and how many files
to transfer at once.

Example YAML (orders.yaml):
    name: orders
    source:
      host: ${FTP_HOST}
      user: ${FTP_USER}
      password: ${FTP_PASSWORD}
      path_prefix: /exports/orders_
      path_match_pattern: \\.csv$
      ssl: true
    target: ./landing/orders
    parallelism: 4

Usage:
    ftp-ingest run ./jobs/orders.yaml
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ftp_ingest.config import FtpSourceConfig
from ftp_ingest.env import expand_options
from ftp_ingest.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["DEFAULT_PARALLELISM", "IngestJob", "load_job", "parse_job"]

DEFAULT_PARALLELISM = 4

_JOB_KEYS = {"name", "source", "target", "parallelism"}


@dataclass(frozen=True)
class IngestJob:
    """One configured ingestion: a source, a target and a concurrency limit."""

    name: str
    source: FtpSourceConfig
    target: Optional[str] = None
    parallelism: int = DEFAULT_PARALLELISM


def _resolve_target(target: str, config_dir: Path) -> str:
    """Resolve ``./`` and ``../`` targets against the job file's directory.

    URLs and absolute paths are unchanged.
    """
    if "://" in target or os.path.isabs(target):
        return target
    if target.startswith("./") or target.startswith("../"):
        return str(config_dir / target)
    return target


def parse_job(config: Dict[str, Any], config_dir: Optional[Path] = None) -> IngestJob:
    """Build an IngestJob from an already-parsed mapping.

    Raises:
        ConfigurationError: If the mapping is not a valid job
    """
    config_dir = config_dir or Path.cwd()

    unknown = sorted(set(config) - _JOB_KEYS)
    if unknown:
        raise ConfigurationError(
            f"Unknown job keys: {', '.join(unknown)}",
            field=unknown[0],
            suggestion=f"Valid keys: {', '.join(sorted(_JOB_KEYS))}",
        )
    if not config.get("name"):
        raise ConfigurationError("Job 'name' is required", field="name")
    source = config.get("source")
    if not isinstance(source, dict):
        raise ConfigurationError(
            "Job 'source' must be a mapping of FTP options", field="source", value=source
        )

    expanded = expand_options(config, strict=True)
    source_config = FtpSourceConfig.from_options(expanded["source"])
    for issue in source_config.validate():
        logger.warning("%s: %s", expanded["name"], issue)

    parallelism = expanded.get("parallelism", DEFAULT_PARALLELISM)
    try:
        parallelism = int(parallelism)
    except (TypeError, ValueError):
        raise ConfigurationError(
            "Job 'parallelism' must be an integer", field="parallelism", value=parallelism
        ) from None
    if parallelism < 1:
        raise ConfigurationError(
            "Job 'parallelism' must be at least 1", field="parallelism", value=parallelism
        )

    target = expanded.get("target")
    if target:
        target = _resolve_target(str(target), config_dir)

    return IngestJob(
        name=str(expanded["name"]),
        source=source_config,
        target=target or None,
        parallelism=parallelism,
    )


def load_job(config_path: Union[str, Path]) -> IngestJob:
    """Load a job from a YAML file.

    Args:
        config_path: Path to the YAML job file

    Returns:
        IngestJob with environment variables expanded

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(
            f"Job file not found: {config_path}", field="path", value=config_path
        )

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}", value=config_path) from e

    if not config:
        raise ConfigurationError(f"Empty job file: {config_path}")
    if not isinstance(config, dict):
        raise ConfigurationError(f"Job file must contain a mapping: {config_path}")

    return parse_job(config, config_path.parent.resolve())
