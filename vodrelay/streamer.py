import asyncio
import logging
import posixpath
import time
import urllib.parse
from dataclasses import dataclass
from email.utils import formatdate
from typing import Dict, Optional, Tuple

from aiohttp import web

from .config import Config
from .errors import NotFound, RangeUnsatisfiable, RelayError, RemoteExecError, RemoteTimeout
from .remote import RemoteExec, RemoteFile
from .shell import pipeline, quote_command

logger = logging.getLogger("vodrelay.streamer")

MIME_TYPES: Dict[str, str] = {
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".3gp": "video/3gpp",
    ".3g2": "video/3gpp2",
    ".ts": "video/mp2t",
    ".mpg": "video/mpeg",
    ".mpeg": "video/mpeg",
    ".ogv": "video/ogg",
    ".m4v": "video/x-m4v",
    ".asf": "video/x-ms-asf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".m3u8": "application/vnd.apple.mpegurl",
    ".mpd": "application/dash+xml",
}
DEFAULT_MIME_TYPE = "video/mp4"

# Manifests change while a stream is live and must never be cached
MANIFEST_TYPES = frozenset({"application/vnd.apple.mpegurl", "application/x-mpegurl", "application/dash+xml"})

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Range, Authorization",
    "Access-Control-Expose-Headers": "Content-Length, Content-Range, Accept-Ranges, X-Conversion-Job",
}

LARGE_TRANSFER_BYTES = 500 * 1024 * 1024


@dataclass(frozen=True)
class RangeWindow:
    start: int
    end: int
    total_size: int

    def __post_init__(self) -> None:
        if not (0 <= self.start <= self.end <= self.total_size - 1):
            raise ValueError(f"Invalid range window {self.start}-{self.end}/{self.total_size}")

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def is_full(self) -> bool:
        return self.start == 0 and self.end == self.total_size - 1


def _parse_candidate(spec: str, total: int) -> Optional[RangeWindow]:
    first, sep, last = spec.strip().partition("-")
    if not sep:
        return None
    first, last = first.strip(), last.strip()
    if first == "":
        # bytes=-N: the final N bytes
        if not last.isdigit() or int(last) == 0:
            return None
        return RangeWindow(max(0, total - int(last)), total - 1, total)
    if not first.isdigit():
        return None
    start = int(first)
    if last == "":
        end = total - 1
    elif last.isdigit():
        end = int(last)
    else:
        return None
    if start >= total or end >= total or start > end:
        return None
    return RangeWindow(start, end, total)


def parse_range(header: Optional[str], total: int) -> Optional[RangeWindow]:
    """
    Parse a single-range ``Range`` header against a file of ``total`` bytes.

    Returns None when the header is absent or not in byte units (serve the
    whole file). Multi-range headers are narrowed to their first satisfiable
    range. Raises ``RangeUnsatisfiable`` when nothing in the header is usable.
    """
    if not header:
        return None
    unit, sep, specs = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        return None
    for spec in specs.split(","):
        window = _parse_candidate(spec, total)
        if window is not None:
            return window
    raise RangeUnsatisfiable(total)


def is_satisfiable(header: Optional[str], total: int) -> bool:
    try:
        parse_range(header, total)
    except RangeUnsatisfiable:
        return False
    return True


def build_read_command(path: str, window: RangeWindow, block_size: int = 64 * 1024) -> str:
    """Remote command whose stdout is exactly the bytes of ``window``.

    Whole files use ``cat``. Partial windows skip whole blocks with ``dd`` and
    trim the leading and trailing remainder with ``tail -c``/``head -c``.
    """
    if window.is_full:
        return quote_command(["cat", path])
    bs = max(512, block_size)
    skip_blocks, offset = divmod(window.start, bs)
    count = -(-(offset + window.length) // bs)
    stages = [quote_command(["dd", f"if={path}", f"bs={bs}", f"skip={skip_blocks}", f"count={count}"])]
    if offset:
        stages.append(quote_command(["tail", "-c", f"+{offset + 1}"]))
    if count * bs - offset != window.length:
        stages.append(quote_command(["head", "-c", str(window.length)]))
    return pipeline(*stages)


def content_type_for(path: str) -> str:
    ext = posixpath.splitext(path)[1].lower()
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


def cache_headers_for(content_type: str, max_age: int) -> Dict[str, str]:
    if content_type in MANIFEST_TYPES:
        return {
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        }
    return {
        "Cache-Control": f"public, max-age={max_age}",
        "Expires": formatdate(time.time() + max_age, usegmt=True),
    }


class RangeStreamer:
    """Serves a remote file over HTTP with byte-range support."""

    def __init__(self, remote: RemoteExec, cfg: Config) -> None:
        self.remote = remote
        self.cfg = cfg

    def base_headers(self, remote_file: RemoteFile) -> Dict[str, str]:
        content_type = content_type_for(remote_file.path)
        filename = posixpath.basename(remote_file.path)
        headers = {
            "Content-Type": content_type,
            "Accept-Ranges": "bytes",
            "Content-Disposition": f"inline; filename*=UTF-8''{urllib.parse.quote(filename)}",
            "Last-Modified": formatdate(remote_file.mtime, usegmt=True),
            "X-Content-Type-Options": "nosniff",
            "X-Accel-Buffering": "no",
        }
        headers.update(cache_headers_for(content_type, self.cfg.media_max_age_seconds))
        headers.update(CORS_HEADERS)
        return headers

    def unsatisfiable(self, remote_file: RemoteFile) -> RangeUnsatisfiable:
        """416 for ``remote_file``, carrying the same type and CORS headers as a 206 would."""
        headers = {
            "Content-Type": content_type_for(remote_file.path),
            "Accept-Ranges": "bytes",
            "Content-Range": f"bytes */{remote_file.size}",
            "Cache-Control": "no-store",
            "X-Content-Type-Options": "nosniff",
        }
        headers.update(CORS_HEADERS)
        return RangeUnsatisfiable(remote_file.size, headers=headers)

    def timeouts(self, window: RangeWindow, full: bool) -> Tuple[float, float]:
        """(idle timeout, total budget) for a transfer of ``window``."""
        if full or window.length >= LARGE_TRANSFER_BYTES:
            idle = self.cfg.full_stream_timeout_seconds
        else:
            idle = self.cfg.range_timeout_seconds
        if self.cfg.min_transfer_rate > 0:
            budget = idle + window.length / self.cfg.min_transfer_rate
        else:
            budget = float("inf")
        return idle, budget

    async def serve(
        self,
        request: web.Request,
        remote_file: RemoteFile,
        host_id: str,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> web.StreamResponse:
        total = remote_file.size
        if total <= 0:
            raise NotFound("Video file is empty")

        headers = self.base_headers(remote_file)
        if extra_headers:
            headers.update(extra_headers)

        try:
            window = parse_range(request.headers.get("Range"), total)
        except RangeUnsatisfiable:
            raise self.unsatisfiable(remote_file) from None
        if window is None:
            window = RangeWindow(0, total - 1, total)
            status = 200
        else:
            status = 206
            headers["Content-Range"] = f"bytes {window.start}-{window.end}/{total}"
        headers["Content-Length"] = str(window.length)

        if request.method == "HEAD":
            resp = web.StreamResponse(status=status, headers=headers)
            await resp.prepare(request)
            await resp.write_eof()
            return resp

        idle, budget = self.timeouts(window, status == 200)
        command = build_read_command(remote_file.path, window, self.cfg.dd_block_size)
        logger.info(f"Streaming {remote_file.path} bytes {window.start}-{window.end}/{total} ({status})")
        stream = await self.remote.open_stream(host_id, command, idle_timeout=idle)
        return await self._pipe(request, stream, window, status, headers, idle, budget, remote_file.path)

    async def _pipe(self, request, stream, window, status, headers, idle, budget, path) -> web.StreamResponse:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget
        resp: Optional[web.StreamResponse] = None
        sent = 0
        try:
            # Wait for the first bytes so an early remote failure can still get a status
            chunk = await stream.read()
            if not chunk:
                raise RemoteExecError("Remote read returned no data")
            resp = web.StreamResponse(status=status, headers=headers)
            await resp.prepare(request)
            while chunk:
                remaining = window.length - sent
                if len(chunk) > remaining:
                    chunk = chunk[:remaining]
                write_timeout = max(0.001, min(idle, deadline - loop.time()))
                await asyncio.wait_for(resp.write(chunk), timeout=write_timeout)
                sent += len(chunk)
                if sent >= window.length:
                    break
                if loop.time() > deadline:
                    raise RemoteTimeout(f"Transfer budget of {budget:.0f}s exhausted")
                chunk = await stream.read()
            if sent < window.length:
                raise RemoteExecError(f"Remote read ended early ({sent}/{window.length} bytes)")
            await resp.write_eof()
            logger.debug(f"Finished {path} bytes {window.start}-{window.end}")
            return resp
        except ConnectionError:
            # Client went away
            logger.info(f"Client aborted {path} after {sent}/{window.length} bytes")
            return self._abort(resp)
        except asyncio.TimeoutError:
            logger.warning(f"Client stalled on {path} after {sent}/{window.length} bytes")
            if resp is None:
                raise RemoteTimeout("Transfer timed out")
            return self._abort(resp)
        except RelayError as e:
            if resp is None:
                raise
            logger.error(f"Stream of {path} failed after {sent}/{window.length} bytes: {e.message}")
            return self._abort(resp)
        finally:
            await stream.close()

    @staticmethod
    def _abort(resp: Optional[web.StreamResponse]) -> web.StreamResponse:
        if resp is None:
            resp = web.StreamResponse(status=499)
        # Status is already on the wire: the only option left is dropping the connection
        resp.force_close()
        return resp
