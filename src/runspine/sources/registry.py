"""Source registry and job discovery.

``SOURCE_TYPES`` maps a lower-cased type tag from the configuration file to
a constructor ``(SourceConfig, SourceContext) -> JobSource``. Adding a source
type means adding one entry here.

``discover_jobs`` builds every configured source and collects their jobs.
A source that cannot be built or fails while listing is logged and skipped;
the other sources still contribute.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from runspine.core.config import SourceConfig
from runspine.core.errors import ConfigurationError, ErrorContext, ProcessError, RunspineError
from runspine.core.logging import get_logger
from runspine.execution.models import Job, dedupe_jobs
from runspine.sources.command import CommandSource
from runspine.sources.protocol import JobSource, SourceContext
from runspine.sources.ytdlp import YtDlpSource

logger = get_logger(__name__)

SourceFactory = Callable[[SourceConfig, SourceContext], JobSource]

SOURCE_TYPES: dict[str, SourceFactory] = {
    "ytdlp": YtDlpSource,
    "youtubedl": YtDlpSource,
    "command": CommandSource,
}


def list_source_types() -> list[str]:
    """List all registered source type tags."""
    return sorted(SOURCE_TYPES)


def required_binaries() -> set[str]:
    """Binaries the registered source types may need, for the startup probe."""
    binaries: set[str] = set()
    for factory in SOURCE_TYPES.values():
        binaries.update(getattr(factory, "required_binaries", ()))
    return binaries


def create_source(config: SourceConfig, context: SourceContext) -> JobSource:
    """Build the source for one configuration entry.

    Raises:
        ConfigurationError: The type is missing or unknown, or the source
            rejected its properties.
    """
    tag = (config.type or "").strip().lower()
    factory = SOURCE_TYPES.get(tag)
    if factory is None:
        available = ", ".join(list_source_types())
        raise ConfigurationError(
            f"Cannot process source config of type: {config.type} (available: {available})",
            context=ErrorContext(source_name=config.name, source_type=config.type),
        )
    return factory(config, context)


def discover_jobs(configs: Iterable[SourceConfig], context: SourceContext) -> list[Job]:
    """Collect jobs from every configured source, skipping broken sources.

    Jobs are deduplicated on ``unique_id`` across all sources; the first
    source to produce an id wins.
    """
    jobs: list[Job] = []
    logger.info("discovery.started")
    for config in configs:
        try:
            source = create_source(config, context)
            found = list(source.get_all_jobs())
        except ProcessError as exc:
            logger.error(
                "discovery.source_skipped",
                source=config.name,
                error=str(exc),
                stderr=exc.stderr,
                error_type=type(exc).__name__,
            )
            continue
        except RunspineError as exc:
            logger.error(
                "discovery.source_skipped",
                source=config.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            continue
        except Exception as exc:
            logger.exception("discovery.source_crashed", source=config.name, error=str(exc))
            continue

        logger.info("discovery.source_listed", source=config.name, jobs=len(found))
        jobs.extend(found)

    unique = dedupe_jobs(jobs)
    logger.info("discovery.finished", jobs=len(unique), duplicates=len(jobs) - len(unique))
    return unique
