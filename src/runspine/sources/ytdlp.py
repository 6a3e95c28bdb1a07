"""
yt-dlp playlist source.

Lists a playlist or channel with ``yt-dlp -j --flat-playlist URL`` and
produces one download job per video. Each output line is a JSON document;
lines that cannot be parsed are skipped with a warning.

Filtering:
    Entries without a duration (live streams, premieres) and YouTube
    shorts are not turned into jobs.

Download flow (one job):
    1. ``yt-dlp --no-simulate --print %()j ... URL`` in the work directory
    2. read ``_filename`` from the first output line
    3. copy every ``<stem>.*`` file into ``DestinationFolder``
    4. delete the originals from the work directory, also on failure

Configuration::

    {
      "name": "lectures",
      "type": "ytdlp",
      "destination_folder": "/media/lectures",
      "properties": {"Url": "https://www.youtube.com/@someone/videos"}
    }
"""

from __future__ import annotations

import glob
import json
import shutil
from datetime import timedelta
from functools import partial
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from runspine.core.config import SourceConfig
from runspine.core.errors import ErrorContext, RunspineError, SerializationError, SourceError
from runspine.core.logging import get_logger
from runspine.execution.models import Job, JobResult, dedupe_jobs, utcnow
from runspine.sources.protocol import SourceContext

logger = get_logger(__name__)

YTDLP_BINARY = "yt-dlp"

# Ids are "youtubedl:<extractor>:<video id>"; existing ledgers use this prefix.
UNIQUE_ID_PREFIX = "youtubedl"

USER_AGENT = "Mozilla/5.0 (compatible; YandexImages/3.0; +http://yandex.com/bots)"


class PlaylistVideoDetails(BaseModel):
    """One line of ``yt-dlp -j --flat-playlist`` output."""

    model_config = ConfigDict(extra="ignore")

    duration_seconds: float | None = Field(default=None, alias="duration")
    extractor: str
    id: str
    title: str = ""
    url: str

    @property
    def unique_id(self) -> str:
        return f"{UNIQUE_ID_PREFIX}:{self.extractor}:{self.id}"

    @property
    def display_name(self) -> str:
        duration = format_duration(self.duration_seconds) if self.duration_seconds is not None else "??:??"
        return f"{self.title} ({duration})"

    @property
    def is_downloadable(self) -> bool:
        return self.duration_seconds is not None and "/shorts/" not in self.url


class DownloadDetails(BaseModel):
    """The fields of ``--print %()j`` output the source needs."""

    model_config = ConfigDict(extra="ignore")

    filename: str = Field(alias="_filename")


def format_duration(seconds: float) -> str:
    """Format seconds as ``[d:]h:mm:ss[.fff]``.

    >>> format_duration(212)
    '0:03:32'
    >>> format_duration(90061.5)
    '1:1:01:01.5'
    """
    delta = timedelta(seconds=seconds)
    hours, remainder = divmod(delta.seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    text = f"{hours}:{minutes:02d}:{secs:02d}"
    if delta.days:
        text = f"{delta.days}:{text}"
    if delta.microseconds:
        text += f".{delta.microseconds:06d}".rstrip("0")
    return text


def parse_playlist_line(line: str) -> PlaylistVideoDetails:
    """Parse one playlist listing line.

    Raises:
        SerializationError: The line is not a JSON object with the expected
            fields.
    """
    return _parse(PlaylistVideoDetails, line)


def parse_download_line(line: str) -> DownloadDetails:
    """Parse the JSON line yt-dlp prints after a download."""
    return _parse(DownloadDetails, line)


def _parse(model: type[BaseModel], line: str):
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise SerializationError(f"yt-dlp output is not JSON: {exc}", cause=exc) from exc
    if not isinstance(data, dict):
        raise SerializationError(f"yt-dlp output is not a JSON object: {line[:80]}")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise SerializationError(f"Unexpected yt-dlp output: {exc}", cause=exc) from exc


class YtDlpSource:
    """Download every video of a playlist or channel with yt-dlp."""

    required_binaries = (YTDLP_BINARY,)

    def __init__(self, config: SourceConfig, context: SourceContext):
        self._config = config
        self._context = context
        self.url: str = str(config.require_property("Url"))
        try:
            self._binary = context.capabilities.require(YTDLP_BINARY)
        except RunspineError as exc:
            raise exc.with_context(source_name=config.name, source_type=config.type)
        self._log = logger.bind(source=config.name)

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def destination_folder(self) -> Path | None:
        folder = self._config.destination_folder
        return Path(folder) if folder and folder.strip() else None

    def get_all_jobs(self) -> list[Job]:
        self._log.info("ytdlp.listing", url=self.url)
        lines = self._context.runner.get_command_output(
            self._binary, ["-j", "--flat-playlist", self.url]
        )

        jobs: list[Job] = []
        for line in lines:
            try:
                details = parse_playlist_line(line)
            except SerializationError as exc:
                self._log.warning("ytdlp.unparseable_line", error=str(exc))
                continue

            if not details.is_downloadable:
                self._log.debug("ytdlp.entry_skipped", title=details.title, url=details.url)
                continue

            jobs.append(self._make_job(details))

        return dedupe_jobs(jobs)

    def _make_job(self, details: PlaylistVideoDetails) -> Job:
        return Job(
            unique_id=details.unique_id,
            display_name=details.display_name,
            source_name=self.name,
            run_action=partial(self.download, details.url),
        )

    # ---- Download ----

    def download(self, url: str) -> JobResult:
        """Download one video and move it into the destination folder."""
        start = utcnow()
        args = [
            "--no-simulate",
            "--print", "%()j",
            "--user-agent", USER_AGENT,
            "--sponsorblock-remove", "sponsor",
            url,
        ]
        try:
            output = self._context.runner.get_command_output(self._binary, args)
            if not output:
                raise SourceError(
                    "Did not receive any output from yt-dlp",
                    context=ErrorContext(source_name=self.name, binary=self._binary),
                )
            self._log.info("ytdlp.downloaded", url=url)

            if self.destination_folder is not None:
                self._move_downloaded_files(output[0], self.destination_folder)
        except (RunspineError, OSError) as exc:
            self._log.error("ytdlp.download_failed", url=url, error=str(exc))
            return JobResult.failed(exc, start_time=start)

        return JobResult.completed(start, utcnow())

    def _move_downloaded_files(self, detail_line: str, destination: Path) -> None:
        details = parse_download_line(detail_line)

        # The reported filename can carry the pre-merge extension, so match
        # on the stem and take every file yt-dlp left behind.
        work_dir = self._context.cwd
        pattern = glob.escape(Path(details.filename).stem) + ".*"
        downloaded = sorted(p for p in work_dir.glob(pattern) if p.is_file())
        if not downloaded:
            self._log.warning("ytdlp.no_files_found", pattern=pattern, work_dir=str(work_dir))
            return

        try:
            destination.mkdir(parents=True, exist_ok=True)
            for path in downloaded:
                target = destination / path.name
                self._log.debug("ytdlp.copying", file=path.name, destination=str(target))
                shutil.copy2(path, target)
        except OSError as exc:
            self._log.warning("ytdlp.move_failed", error=str(exc))
            raise
        finally:
            for path in downloaded:
                path.unlink(missing_ok=True)
