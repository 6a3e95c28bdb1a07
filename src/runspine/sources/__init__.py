"""Job sources: where the jobs of a run come from."""

from runspine.sources.command import CommandSource
from runspine.sources.protocol import JobSource, SourceContext
from runspine.sources.registry import (
    SOURCE_TYPES,
    create_source,
    discover_jobs,
    list_source_types,
    required_binaries,
)
from runspine.sources.ytdlp import YtDlpSource

__all__ = [
    "SOURCE_TYPES",
    "CommandSource",
    "JobSource",
    "SourceContext",
    "YtDlpSource",
    "create_source",
    "discover_jobs",
    "list_source_types",
    "required_binaries",
]
