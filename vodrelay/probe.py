import json
import logging
import posixpath
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional

from .cache import ProbeCache
from .config import Config
from .errors import NotFound, ProbeError, RemoteTimeout
from .remote import RemoteExec, RemoteFile, stat_path
from .shell import quote_command

logger = logging.getLogger("vodrelay.probe")

PLAYABLE_CONTAINER = "mp4"

REASON_COMPATIBLE = "compatible"
REASON_BITRATE = "bitrate exceeds limit"
REASON_CONTAINER = "wrong container"
REASON_UNPROBEABLE = "unprobeable"
REASON_NOT_FOUND = "not found"


@dataclass(frozen=True)
class MediaMetadata:
    path: str
    size_bytes: int
    duration_seconds: float
    container_ext: str
    format_name: str
    video_codec: str
    audio_codec: str
    bitrate_kbps: int
    width: int
    height: int
    is_natively_playable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CompatibilityVerdict:
    compatible: bool
    needs_conversion: bool
    reason: str
    detail: str
    container: str
    is_mp4: bool
    current_bitrate: int
    bitrate_limit: int
    bitrate_exceeds_limit: bool
    file_size: int
    video_codec: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def container_of(path: str) -> str:
    return posixpath.splitext(path)[1].lower().lstrip(".")


def _kbps(value: Any) -> int:
    try:
        return int(int(value) // 1000)
    except (TypeError, ValueError):
        return 0


def _first_stream(streams: list, codec_type: str) -> Optional[dict]:
    for s in streams:
        if isinstance(s, dict) and s.get("codec_type") == codec_type:
            return s
    return None


def parse_probe_output(path: str, size: int, raw: str) -> MediaMetadata:
    """Build metadata from ``ffprobe -print_format json -show_format -show_streams`` output."""
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ProbeError(f"Unparseable probe output: {e}")
    if not isinstance(data, dict):
        raise ProbeError("Unparseable probe output")
    fmt = data.get("format") or {}
    streams = data.get("streams") or []
    if not fmt and not streams:
        raise ProbeError("Probe returned no format or streams")

    video = _first_stream(streams, "video") or {}
    audio = _first_stream(streams, "audio") or {}

    # Container bitrate first, then the video stream
    bitrate = _kbps(fmt.get("bit_rate"))
    if not bitrate:
        bitrate = _kbps(video.get("bit_rate"))

    try:
        duration = float(fmt.get("duration") or video.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0

    return MediaMetadata(
        path=path,
        size_bytes=size,
        duration_seconds=round(duration, 3),
        container_ext=container_of(path),
        format_name=str(fmt.get("format_name") or ""),
        video_codec=str(video.get("codec_name") or "unknown"),
        audio_codec=str(audio.get("codec_name") or "unknown"),
        bitrate_kbps=bitrate,
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
    )


def classify(container: str, bitrate_kbps: int, ceiling_kbps: int):
    """Return (compatible, reason, detail) for a container/bitrate pair."""
    is_mp4 = container == PLAYABLE_CONTAINER
    exceeds = bitrate_kbps > ceiling_kbps
    if exceeds:
        return False, REASON_BITRATE, f"Bitrate {bitrate_kbps} kbps exceeds the limit of {ceiling_kbps} kbps"
    if not is_mp4:
        return False, REASON_CONTAINER, f"Format .{container} must be converted to MP4"
    return True, REASON_COMPATIBLE, "File is compatible"


def build_verdict(meta: MediaMetadata, ceiling_kbps: int) -> CompatibilityVerdict:
    compatible, reason, detail = classify(meta.container_ext, meta.bitrate_kbps, ceiling_kbps)
    return CompatibilityVerdict(
        compatible=compatible,
        needs_conversion=not compatible,
        reason=reason,
        detail=detail,
        container=meta.container_ext,
        is_mp4=meta.container_ext == PLAYABLE_CONTAINER,
        current_bitrate=meta.bitrate_kbps,
        bitrate_limit=ceiling_kbps,
        bitrate_exceeds_limit=meta.bitrate_kbps > ceiling_kbps,
        file_size=meta.size_bytes,
        video_codec=meta.video_codec,
    )


def missing_verdict(path: str, ceiling_kbps: int) -> CompatibilityVerdict:
    container = container_of(path)
    return CompatibilityVerdict(
        compatible=False,
        needs_conversion=False,
        reason=REASON_NOT_FOUND,
        detail="File does not exist or is empty",
        container=container,
        is_mp4=container == PLAYABLE_CONTAINER,
        current_bitrate=0,
        bitrate_limit=ceiling_kbps,
        bitrate_exceeds_limit=False,
        file_size=0,
    )


def unprobeable_verdict(path: str, size: int, ceiling_kbps: int) -> CompatibilityVerdict:
    container = container_of(path)
    return CompatibilityVerdict(
        compatible=False,
        needs_conversion=True,
        reason=REASON_UNPROBEABLE,
        detail="Could not analyse the file",
        container=container,
        is_mp4=container == PLAYABLE_CONTAINER,
        current_bitrate=0,
        bitrate_limit=ceiling_kbps,
        bitrate_exceeds_limit=False,
        file_size=size,
    )


class MediaProbe:
    def __init__(self, remote: RemoteExec, cfg: Config, cache: Optional[ProbeCache] = None) -> None:
        self.remote = remote
        self.cfg = cfg
        self.cache = cache or ProbeCache(cfg.probe_cache_ttl_seconds, cfg.probe_cache_max_entries)

    async def probe(
        self,
        path: str,
        host_id: str,
        bitrate_ceiling: Optional[int] = None,
        remote_file: Optional[RemoteFile] = None,
    ) -> MediaMetadata:
        ceiling = bitrate_ceiling or self.cfg.default_bitrate_limit
        if remote_file is None:
            remote_file = await stat_path(self.remote, host_id, path)
        if remote_file is None or remote_file.size == 0:
            raise NotFound()

        key = ProbeCache.key(host_id, path, remote_file.size, remote_file.mtime)
        meta = self.cache.get(key)
        if meta is None:
            cmd = quote_command([
                self.cfg.ffprobe_path, "-v", "quiet", "-print_format", "json",
                "-show_format", "-show_streams", path,
            ])
            try:
                result = await self.remote.run(host_id, cmd)
            except RemoteTimeout as e:
                raise ProbeError(f"Probe timed out: {e}")
            if not result.ok:
                raise ProbeError(f"ffprobe exited with status {result.exit_status}: {result.error_text()[:200]}")
            meta = parse_probe_output(path, remote_file.size, result.text())
            self.cache.set(key, meta)
            logger.debug(f"Probed {path}: {meta.container_ext} {meta.video_codec} {meta.bitrate_kbps} kbps")

        playable, _, _ = classify(meta.container_ext, meta.bitrate_kbps, ceiling)
        return replace(meta, is_natively_playable=playable)

    async def check_compatibility(
        self,
        path: str,
        host_id: str,
        bitrate_ceiling: Optional[int] = None,
        remote_file: Optional[RemoteFile] = None,
    ) -> CompatibilityVerdict:
        """Probe and classify; a missing file or one ffprobe cannot read still gets a verdict."""
        ceiling = bitrate_ceiling or self.cfg.default_bitrate_limit
        try:
            meta = await self.probe(path, host_id, ceiling, remote_file)
        except NotFound:
            return missing_verdict(path, ceiling)
        except ProbeError as e:
            logger.warning(f"Could not probe {path}: {e}")
            return unprobeable_verdict(path, remote_file.size if remote_file else 0, ceiling)
        return build_verdict(meta, ceiling)

    async def check_integrity(self, path: str, host_id: str) -> Dict[str, Any]:
        """Count decodable packets of the first video stream."""
        cmd = quote_command([
            self.cfg.ffprobe_path, "-v", "error", "-select_streams", "v:0", "-count_packets",
            "-show_entries", "stream=nb_read_packets", "-of", "csv=p=0", path,
        ])
        try:
            result = await self.remote.run(host_id, cmd, timeout=self.cfg.conversion_timeout_seconds)
        except RemoteTimeout:
            return {"valid": False, "packets": 0, "reason": "Integrity check timed out"}
        try:
            packets = int(result.text().strip().splitlines()[0])
        except (ValueError, IndexError):
            packets = 0
        if not result.ok or packets <= 0:
            return {"valid": False, "packets": 0, "reason": "File is corrupted or not a valid video"}
        return {"valid": True, "packets": packets}
