"""Run lifecycle: discover, fan out one work unit per file, emit the watermark.

The stages mirror a bulk loader's file-input contract so the package can
also be driven by an external host:

- ``transaction``: discovery pass; decides the number of work units
- ``open_task``: a SingleFileProvider for one unit
- ``resume``: the next run's config diff (``last_path``)
- ``cleanup``: nothing is persisted, so nothing to clean

``run`` wires the stages together in-process.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ftp_ingest.config import FtpSourceConfig
from ftp_ingest.listing import discover_files
from ftp_ingest.provider import NamedByteSource, SingleFileProvider
from ftp_ingest.session import FtpSession
from ftp_ingest.state import next_watermark

logger = logging.getLogger(__name__)

__all__ = [
    "IngestPlan",
    "IngestResult",
    "cleanup",
    "open_task",
    "resume",
    "run",
    "run_task",
    "transaction",
]

Consumer = Callable[[NamedByteSource], Any]
SessionFactory = Callable[[FtpSourceConfig], FtpSession]


@dataclass(frozen=True)
class IngestPlan:
    """The outcome of discovery: one work unit per selected file."""

    config: FtpSourceConfig
    files: Tuple[str, ...]

    @property
    def task_count(self) -> int:
        return len(self.files)


@dataclass
class IngestResult:
    """What a completed run produced."""

    files: Tuple[str, ...]
    outputs: List[Any] = field(default_factory=list)
    config_diff: Dict[str, str] = field(default_factory=dict)

    @property
    def last_path(self) -> Optional[str]:
        return self.config_diff.get("last_path")


def transaction(
    config: FtpSourceConfig,
    *,
    session_factory: Optional[SessionFactory] = None,
) -> IngestPlan:
    """Run the discovery pass and freeze the list of work units."""
    files = discover_files(config, session_factory=session_factory)
    logger.info("Using files %s", list(files))
    return IngestPlan(config=config, files=files)


def resume(plan: IngestPlan) -> Dict[str, str]:
    """Config diff for the next run: ``{"last_path": ...}`` or ``{}``."""
    watermark = next_watermark(plan.config.incremental, plan.config.last_path, plan.files)
    if watermark is None:
        return {}
    return {"last_path": watermark}


def cleanup(plan: IngestPlan) -> None:  # noqa: ARG001
    """Nothing to clean up; kept for lifecycle symmetry."""


def open_task(plan: IngestPlan, index: int, **provider_options: Any) -> SingleFileProvider:
    """Provider for work unit ``index``."""
    return SingleFileProvider(plan.config, plan.files[index], **provider_options)


def run_task(
    plan: IngestPlan,
    index: int,
    consumer: Consumer,
    **provider_options: Any,
) -> Any:
    """Stream one work unit's file into ``consumer`` and release everything."""
    with open_task(plan, index, **provider_options) as provider:
        result = None
        source = provider.next()
        while source is not None:
            result = consumer(source)
            source = provider.next()
        return result


def run(
    config: FtpSourceConfig,
    consumer: Consumer,
    *,
    parallelism: int = 4,
    session_factory: Optional[SessionFactory] = None,
    **provider_options: Any,
) -> IngestResult:
    """Discover, ingest every selected file, and compute the next watermark.

    Work units run in parallel, each with its own session. If any unit
    fails, the first failure (in file order) is raised after all units
    have finished, and no config diff is produced.

    Args:
        config: Source configuration
        consumer: Called once per file with its NamedByteSource
        parallelism: Maximum number of concurrent work units
        session_factory: Opens sessions (tests inject fakes)
        **provider_options: Passed to each SingleFileProvider

    Returns:
        IngestResult with per-file consumer outputs in file order
    """
    plan = transaction(config, session_factory=session_factory)
    if session_factory is not None:
        provider_options.setdefault("session_factory", session_factory)

    outputs: List[Any] = [None] * plan.task_count
    errors: Dict[int, BaseException] = {}

    if plan.task_count:
        max_workers = max(1, min(parallelism, plan.task_count))
        logger.info(
            "Starting %d work unit(s) with %d worker(s)", plan.task_count, max_workers
        )
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(run_task, plan, index, consumer, **provider_options): index
                for index in range(plan.task_count)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    outputs[index] = future.result()
                    logger.info("Completed %s", plan.files[index])
                except Exception as exc:
                    logger.error("Failed %s: %s", plan.files[index], exc)
                    errors[index] = exc

        logger.info(
            "Ingestion complete: %d successful, %d failed out of %d total",
            plan.task_count - len(errors),
            len(errors),
            plan.task_count,
        )

    if errors:
        raise errors[min(errors)]

    config_diff = resume(plan)
    cleanup(plan)
    return IngestResult(files=plan.files, outputs=outputs, config_diff=config_diff)
