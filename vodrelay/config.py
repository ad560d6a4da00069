import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv
import tempfile
import stat


@dataclass
class Config:
    # HTTP server
    http_host: str
    http_port: int
    public_base_url: Optional[str]

    # Bearer credentials
    jwt_secret: str
    jwt_algorithms: List[str]

    # Remote content
    content_root: str
    hosts_path: str
    default_host_id: str
    ssh_host: str
    ssh_port: int
    ssh_username: str
    ssh_password: Optional[str]
    ssh_key_path: Optional[str]
    connect_timeout_seconds: float

    # Remote tools
    ffmpeg_path: str
    ffprobe_path: str

    # Plan limits
    default_bitrate_limit: int
    auto_convert: bool

    # Timeouts
    command_timeout_seconds: float
    conversion_timeout_seconds: float
    range_timeout_seconds: float
    full_stream_timeout_seconds: float
    min_transfer_rate: int  # bytes/s used to scale the total transfer budget
    stream_grace_seconds: float

    # Streaming
    stream_chunk_size: int
    stream_buffer_chunks: int
    dd_block_size: int
    media_max_age_seconds: int

    # Probe cache
    probe_cache_ttl_seconds: int
    probe_cache_max_entries: int

    # Pools
    max_connections_per_host: int
    max_channels_per_connection: int
    max_conversions_per_host: int
    worker_threads: int

    # Thumbnails
    thumbnail_size: str
    thumbnail_default_time: str

    # Leftover .part/.tmp files older than this are swept by /cleanup
    staging_max_age_minutes: int

    log_level: str
    runtime_config_path: str


def getenv_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def getenv_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def getenv_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.lower() in ("1", "true", "yes")


def getenv_list(name: str, default: List[str]) -> List[str]:
    v = os.getenv(name)
    if not v:
        return default
    parts = [x.strip() for x in v.split(",")]
    return [p for p in parts if p]


def _apply_runtime_overrides(cfg: Config) -> Config:
    import json
    path = cfg.runtime_config_path or "runtime_config.json"
    try:
        if not os.path.exists(path):
            return cfg
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return cfg
    if not isinstance(data, dict):
        return cfg

    def set_str(name: str):
        v = data.get(name)
        if isinstance(v, str):
            setattr(cfg, name, v)

    def set_opt_str(name: str):
        if name not in data:
            return
        v = data.get(name)
        if v is None or isinstance(v, str):
            setattr(cfg, name, v)

    def set_bool(name: str):
        v = data.get(name)
        if isinstance(v, bool):
            setattr(cfg, name, v)

    def set_int(name: str):
        v = data.get(name)
        if isinstance(v, int) and not isinstance(v, bool):
            setattr(cfg, name, v)

    def set_float(name: str):
        v = data.get(name)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            setattr(cfg, name, float(v))

    def set_list_str(name: str):
        v = data.get(name)
        if isinstance(v, list):
            setattr(cfg, name, [str(x) for x in v])
        elif isinstance(v, str):
            setattr(cfg, name, [p.strip() for p in v.split(",") if p.strip()])

    for key in [
        "http_host", "jwt_secret", "content_root", "hosts_path", "default_host_id",
        "ssh_host", "ssh_username", "ffmpeg_path", "ffprobe_path",
        "thumbnail_size", "thumbnail_default_time", "log_level",
    ]:
        set_str(key)
    for key in ["public_base_url", "ssh_password", "ssh_key_path"]:
        set_opt_str(key)
    for key in ["auto_convert"]:
        set_bool(key)
    for key in [
        "http_port", "ssh_port", "default_bitrate_limit", "min_transfer_rate",
        "stream_chunk_size", "stream_buffer_chunks", "dd_block_size",
        "media_max_age_seconds", "probe_cache_ttl_seconds", "probe_cache_max_entries",
        "max_connections_per_host", "max_channels_per_connection",
        "max_conversions_per_host", "worker_threads", "staging_max_age_minutes",
    ]:
        set_int(key)
    for key in [
        "connect_timeout_seconds", "command_timeout_seconds", "conversion_timeout_seconds",
        "range_timeout_seconds", "full_stream_timeout_seconds", "stream_grace_seconds",
    ]:
        set_float(key)
    for key in ["jwt_algorithms"]:
        set_list_str(key)

    return cfg


def load_config() -> Config:
    # Load .env if present
    load_dotenv()

    # Allow SSH key to be provided via env text and written to a temp file at runtime
    ssh_key_path = os.getenv("SSH_KEY_PATH")
    ssh_key_text = os.getenv("SSH_KEY_TEXT")
    if not ssh_key_path and ssh_key_text:
        tmp = tempfile.NamedTemporaryFile(delete=False)
        tmp.write(ssh_key_text.encode("utf-8"))
        tmp.flush()
        tmp.close()
        # Restrict permissions to owner read-only
        os.chmod(tmp.name, stat.S_IRUSR | stat.S_IWUSR)
        ssh_key_path = tmp.name

    cfg = Config(
        http_host=os.getenv("HTTP_HOST", "0.0.0.0"),
        http_port=getenv_int("HTTP_PORT", 8080),
        public_base_url=os.getenv("PUBLIC_BASE_URL"),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        jwt_algorithms=getenv_list("JWT_ALGORITHMS", ["HS256"]),
        content_root=os.getenv("CONTENT_ROOT", "/usr/local/WowzaStreamingEngine/content"),
        hosts_path=os.getenv("HOSTS_PATH", "hosts.json"),
        default_host_id=os.getenv("DEFAULT_HOST_ID", "1"),
        ssh_host=os.getenv("SSH_HOST", ""),
        ssh_port=getenv_int("SSH_PORT", 22),
        ssh_username=os.getenv("SSH_USERNAME", "root"),
        ssh_password=os.getenv("SSH_PASSWORD"),
        ssh_key_path=ssh_key_path,
        connect_timeout_seconds=getenv_float("SSH_CONNECT_TIMEOUT", 10.0),
        ffmpeg_path=os.getenv("REMOTE_FFMPEG", "ffmpeg"),
        ffprobe_path=os.getenv("REMOTE_FFPROBE", "ffprobe"),
        default_bitrate_limit=getenv_int("DEFAULT_BITRATE_LIMIT", 2500),
        auto_convert=getenv_bool("AUTO_CONVERT", True),
        command_timeout_seconds=getenv_float("COMMAND_TIMEOUT", 30.0),
        conversion_timeout_seconds=getenv_float("CONVERSION_TIMEOUT", 7200.0),
        range_timeout_seconds=getenv_float("RANGE_TIMEOUT", 60.0),
        full_stream_timeout_seconds=getenv_float("FULL_STREAM_TIMEOUT", 120.0),
        min_transfer_rate=getenv_int("MIN_TRANSFER_RATE", 32 * 1024),
        stream_grace_seconds=getenv_float("STREAM_GRACE_SECONDS", 5.0),
        stream_chunk_size=getenv_int("STREAM_CHUNK_SIZE", 64 * 1024),
        stream_buffer_chunks=getenv_int("STREAM_BUFFER_CHUNKS", 8),
        dd_block_size=getenv_int("DD_BLOCK_SIZE", 64 * 1024),
        media_max_age_seconds=getenv_int("MEDIA_MAX_AGE", 2592000),
        probe_cache_ttl_seconds=getenv_int("PROBE_CACHE_TTL_SECONDS", 900),
        probe_cache_max_entries=getenv_int("PROBE_CACHE_MAX_ENTRIES", 1024),
        max_connections_per_host=getenv_int("MAX_CONNECTIONS_PER_HOST", 4),
        max_channels_per_connection=getenv_int("MAX_CHANNELS_PER_CONNECTION", 8),
        max_conversions_per_host=getenv_int("MAX_CONVERSIONS_PER_HOST", 2),
        worker_threads=getenv_int("WORKER_THREADS", 64),
        thumbnail_size=os.getenv("THUMBNAIL_SIZE", "320x180"),
        thumbnail_default_time=os.getenv("THUMBNAIL_TIME", "00:00:10"),
        staging_max_age_minutes=getenv_int("STAGING_MAX_AGE_MINUTES", 60),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        runtime_config_path=os.getenv("RUNTIME_CONFIG_PATH", "runtime_config.json"),
    )
    return _apply_runtime_overrides(cfg)
