import asyncio
import contextlib
import logging
import posixpath
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Config
from .errors import ConversionError, InvalidRequest, RelayError, RemoteExecError
from .remote import RemoteExec, path_exists
from .shell import quote_command

logger = logging.getLogger("vodrelay.convert")

QUALITY_PRESETS = (
    "ultrafast", "superfast", "veryfast", "faster", "fast",
    "medium", "slow", "slower", "veryslow",
)
_RESOLUTION_RE = re.compile(r"^(\d{2,5})x(\d{2,5})$")
_TIME_RE = re.compile(r"^(\d{1,2}:\d{2}:\d{2}(\.\d{1,3})?|\d{1,6}(\.\d{1,3})?)$")

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_ERROR = "error"

MAX_FINISHED_JOBS = 500


@dataclass(frozen=True)
class ConversionOptions:
    bitrate_kbps: int = 2500
    resolution: str = "1920x1080"
    quality: str = "fast"
    audio_bitrate_kbps: int = 128

    def validate(self) -> None:
        if not isinstance(self.bitrate_kbps, int) or self.bitrate_kbps <= 0:
            raise InvalidRequest("Bitrate must be a positive integer (kbps)")
        if not _RESOLUTION_RE.match(self.resolution or ""):
            raise InvalidRequest("Resolution must look like 1920x1080")
        if self.quality not in QUALITY_PRESETS:
            raise InvalidRequest(f"Quality must be one of: {', '.join(QUALITY_PRESETS)}")
        if not isinstance(self.audio_bitrate_kbps, int) or self.audio_bitrate_kbps <= 0:
            raise InvalidRequest("Audio bitrate must be a positive integer (kbps)")

    @property
    def width(self) -> int:
        return int(self.resolution.split("x")[0])

    @property
    def height(self) -> int:
        return int(self.resolution.split("x")[1])


@dataclass
class ConversionResult:
    success: bool
    source_path: str
    output_path: str
    already_exists: bool = False
    converted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConversionJob:
    job_id: str
    host_id: str
    source_path: str
    target_path: str
    options: ConversionOptions
    subject_id: Optional[str] = None
    state: str = JOB_QUEUED
    result: Optional[ConversionResult] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def finished(self) -> bool:
        return self.state in (JOB_DONE, JOB_ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state,
            "source_path": self.source_path,
            "target_path": self.target_path,
            "options": asdict(self.options),
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def converted_path(source: str, bitrate_kbps: int) -> str:
    stem, _ = posixpath.splitext(source)
    return f"{stem}_{bitrate_kbps}kbps.mp4"


def playable_path(source: str, bitrate_kbps: int) -> str:
    """Where the browser-playable derivative of ``source`` lives."""
    stem, ext = posixpath.splitext(source)
    if ext.lower() == ".mp4":
        return converted_path(source, bitrate_kbps)
    return f"{stem}.mp4"


_DERIVATIVE_RE = re.compile(r"_\d+kbps\.mp4$", re.IGNORECASE)


def is_derivative(path: str) -> bool:
    """True for files written by an explicit conversion (``*_<N>kbps.mp4``)."""
    return bool(_DERIVATIVE_RE.search(path))


def thumbnail_path(source: str, time_offset: Optional[str] = None) -> str:
    stem, _ = posixpath.splitext(source)
    if not time_offset:
        return f"{stem}_thumb.jpg"
    return f"{stem}_thumb_{time_offset.replace(':', '-').replace('.', '-')}.jpg"


def staging_path(target: str) -> str:
    directory, name = posixpath.split(target)
    return posixpath.join(directory, f".{name}.part")


def validate_time_offset(value: str) -> str:
    if not _TIME_RE.match(value or ""):
        raise InvalidRequest("Time must be HH:MM:SS or a number of seconds")
    return value


def estimate_converted_size(original_size: int, original_bitrate: int, target_bitrate: int) -> int:
    if not original_bitrate:
        # Unknown source bitrate: conservative guess
        return int(original_size * 0.7)
    return int(original_size * (target_bitrate / original_bitrate))


class ConversionEngine:
    """
    Idempotent remote transcodes and thumbnail extraction.

    At most one conversion runs per (host, target) and at most
    ``max_conversions_per_host`` run per host. Background jobs are tracked in
    an in-memory table so callers can poll them.
    """

    def __init__(self, remote: RemoteExec, cfg: Config) -> None:
        self.remote = remote
        self.cfg = cfg
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self.jobs: Dict[str, ConversionJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._active_by_target: Dict[Tuple[str, str], str] = {}

    @contextlib.asynccontextmanager
    async def _target_lock(self, host_id: str, target: str):
        key = (str(host_id), target)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] <= 0:
                self._lock_users.pop(key, None)
                self._locks.pop(key, None)

    def _semaphore(self, host_id: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(str(host_id))
        if sem is None:
            sem = asyncio.Semaphore(max(1, self.cfg.max_conversions_per_host))
            self._semaphores[str(host_id)] = sem
        return sem

    def _transcode_args(self, source: str, output: str, options: ConversionOptions) -> List[str]:
        b = options.bitrate_kbps
        return [
            self.cfg.ffmpeg_path, "-hide_banner", "-nostdin", "-y",
            "-i", source,
            "-c:v", "libx264", "-preset", options.quality, "-crf", "23",
            "-b:v", f"{b}k", "-maxrate", f"{b}k", "-bufsize", f"{b * 2}k",
            "-vf", f"scale={options.width}:{options.height}",
            "-c:a", "aac", "-b:a", f"{options.audio_bitrate_kbps}k",
            "-movflags", "+faststart",
            "-f", "mp4", output,
        ]

    def _thumbnail_args(self, source: str, output: str, time_offset: str) -> List[str]:
        return [
            self.cfg.ffmpeg_path, "-hide_banner", "-nostdin", "-y",
            "-ss", time_offset, "-i", source,
            "-frames:v", "1", "-q:v", "2", "-s", self.cfg.thumbnail_size,
            "-f", "mjpeg", output,
        ]

    async def _discard(self, host_id: str, path: str) -> None:
        try:
            await self.remote.run(host_id, quote_command(["rm", "-f", path]))
        except RemoteExecError:
            logger.warning(f"Could not remove staging file {path} on host {host_id}", exc_info=True)

    async def _run_ffmpeg(self, host_id: str, args: List[str], staging: str, label: str) -> None:
        limit = int(self.cfg.conversion_timeout_seconds)
        # Remote `timeout` bounds the process even if our channel goes away
        command = quote_command(["timeout", str(limit)] + args)
        try:
            result = await self.remote.run(host_id, command, timeout=limit + 30)
        except RemoteExecError as e:
            await self._discard(host_id, staging)
            raise ConversionError(f"{label} failed: {e.message}") from e
        if not result.ok:
            stderr = result.error_text()
            logger.error(f"{label} failed on host {host_id} (exit {result.exit_status}): {stderr[-2000:]}")
            await self._discard(host_id, staging)
            raise ConversionError(f"{label} failed", stderr=stderr, exit_status=result.exit_status)

    async def _finalize(self, host_id: str, staging: str, target: str) -> None:
        moved = await self.remote.run(host_id, quote_command(["mv", "-f", staging, target]))
        if not moved.ok:
            await self._discard(host_id, staging)
            raise ConversionError("Could not move converted file into place", stderr=moved.error_text())
        chmod = await self.remote.run(host_id, quote_command(["chmod", "644", target]))
        if not chmod.ok:
            logger.warning(f"chmod 644 failed for {target}: {chmod.error_text()}")

    async def convert(
        self,
        source: str,
        target: str,
        host_id: str,
        options: Optional[ConversionOptions] = None,
        on_start: Optional[Callable[[], None]] = None,
    ) -> ConversionResult:
        """Transcode ``source`` into ``target`` unless ``target`` already exists."""
        options = options or ConversionOptions(bitrate_kbps=self.cfg.default_bitrate_limit)
        options.validate()
        if source == target:
            raise InvalidRequest("Output would overwrite the source file")

        async with self._target_lock(host_id, target):
            if await path_exists(self.remote, host_id, target):
                logger.info(f"Converted file already exists: {target}")
                return ConversionResult(success=True, source_path=source, output_path=target, already_exists=True)
            async with self._semaphore(host_id):
                if on_start is not None:
                    on_start()
                logger.info(
                    f"Converting {source} -> {target} "
                    f"({options.bitrate_kbps} kbps, {options.resolution}, {options.quality})"
                )
                staging = staging_path(target)
                await self._run_ffmpeg(host_id, self._transcode_args(source, staging, options), staging, "Conversion")
                await self._finalize(host_id, staging, target)
        logger.info(f"Conversion finished: {target}")
        return ConversionResult(success=True, source_path=source, output_path=target, converted=True)

    async def generate_thumbnail(
        self,
        source: str,
        output: str,
        host_id: str,
        time_offset: Optional[str] = None,
    ) -> ConversionResult:
        time_offset = validate_time_offset(time_offset or self.cfg.thumbnail_default_time)
        async with self._target_lock(host_id, output):
            if await path_exists(self.remote, host_id, output):
                return ConversionResult(success=True, source_path=source, output_path=output, already_exists=True)
            async with self._semaphore(host_id):
                logger.info(f"Generating thumbnail {output} at {time_offset}")
                staging = staging_path(output)
                await self._run_ffmpeg(host_id, self._thumbnail_args(source, staging, time_offset), staging, "Thumbnail")
                await self._finalize(host_id, staging, output)
        return ConversionResult(success=True, source_path=source, output_path=output, converted=True)

    async def cleanup_staging(self, host_id: str, directory: str, max_age_minutes: Optional[int] = None) -> List[str]:
        """Delete ``.part`` staging and ``.tmp`` files under ``directory`` older than ``max_age_minutes``.

        Live conversions keep touching their staging file, so only leftovers of
        interrupted runs are old enough to match.
        """
        minutes = max(1, int(max_age_minutes or self.cfg.staging_max_age_minutes))
        command = quote_command([
            "find", directory, "-type", "f",
            "(", "-name", ".*.part", "-o", "-name", "*.tmp", ")",
            "-mmin", f"+{minutes}", "-print", "-delete",
        ])
        result = await self.remote.run(host_id, command)
        if not result.ok:
            logger.warning(f"Cleanup of {directory} on host {host_id} exited {result.exit_status}: {result.error_text()[:200]}")
        removed = [line for line in result.text().splitlines() if line.strip()]
        if removed:
            logger.info(f"Removed {len(removed)} stale staging files under {directory} on host {host_id}")
        return removed

    # ---- Background jobs ----
    def submit(
        self,
        source: str,
        target: str,
        host_id: str,
        options: Optional[ConversionOptions] = None,
        subject_id: Optional[str] = None,
    ) -> ConversionJob:
        """Queue a conversion; a target that already has a live job gets that job back."""
        options = options or ConversionOptions(bitrate_kbps=self.cfg.default_bitrate_limit)
        options.validate()
        key = (str(host_id), target)
        live_id = self._active_by_target.get(key)
        if live_id is not None and live_id in self.jobs and not self.jobs[live_id].finished:
            return self.jobs[live_id]

        job = ConversionJob(
            job_id=uuid.uuid4().hex,
            host_id=str(host_id),
            source_path=source,
            target_path=target,
            options=options,
            subject_id=subject_id,
        )
        self.jobs[job.job_id] = job
        self._active_by_target[key] = job.job_id
        task = asyncio.create_task(self._run_job(job))
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda t, jid=job.job_id: self._tasks.pop(jid, None))
        self._prune_jobs()
        logger.info(f"Queued conversion job {job.job_id}: {source} -> {target}")
        return job

    def _mark(self, job: ConversionJob, state: str) -> None:
        job.state = state
        job.updated_at = time.time()

    async def _run_job(self, job: ConversionJob) -> None:
        try:
            job.result = await self.convert(
                job.source_path, job.target_path, job.host_id, job.options,
                on_start=lambda: self._mark(job, JOB_RUNNING),
            )
            self._mark(job, JOB_DONE)
            logger.info(f"Conversion job {job.job_id} done (already_exists={job.result.already_exists})")
        except RelayError as e:
            job.error = e.message
            self._mark(job, JOB_ERROR)
            logger.error(f"Conversion job {job.job_id} failed: {e.message}")
        except asyncio.CancelledError:
            job.error = "cancelled"
            self._mark(job, JOB_ERROR)
            raise
        except Exception as e:
            job.error = "internal error"
            self._mark(job, JOB_ERROR)
            logger.exception(f"Conversion job {job.job_id} crashed: {e}")
        finally:
            key = (job.host_id, job.target_path)
            if self._active_by_target.get(key) == job.job_id:
                self._active_by_target.pop(key, None)

    def get_job(self, job_id: str) -> Optional[ConversionJob]:
        return self.jobs.get(job_id)

    def _prune_jobs(self) -> None:
        finished = [j for j in self.jobs.values() if j.finished]
        if len(finished) <= MAX_FINISHED_JOBS:
            return
        finished.sort(key=lambda j: j.updated_at)
        for job in finished[: len(finished) - MAX_FINISHED_JOBS]:
            self.jobs.pop(job.job_id, None)

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
