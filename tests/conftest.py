import asyncio
import fnmatch
import json
import posixpath
import random
import shlex
import socket
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import jwt
import paramiko
import pytest

from vodrelay.auth import IdentityProvider
from vodrelay.config import load_config
from vodrelay.hosts import HostDirectory
from vodrelay.paths import encode_video_id
from vodrelay.remote import RemoteExec
from vodrelay.web import StreamServer

SECRET = "test-secret"
ROOT = "/usr/local/WowzaStreamingEngine/content"
HOST_ID = "1"
MTIME = 1700000000


def payload(size: int, seed: int = 1234) -> bytes:
    return random.Random(seed).randbytes(size)


def probe_json(bitrate_kbps: int, codec: str = "h264", width: int = 1920, height: int = 1080,
               duration: float = 120.0, packets: int = 3000) -> dict:
    return {
        "format": {
            "format_name": "mov,mp4,m4a,3gp,3g2,mj2",
            "duration": str(duration),
            "bit_rate": str(bitrate_kbps * 1000),
        },
        "streams": [
            {"codec_type": "video", "codec_name": codec, "width": width, "height": height},
            {"codec_type": "audio", "codec_name": "aac"},
        ],
        "packets": packets,
    }


@dataclass
class FakeFile:
    data: bytes
    mtime: int = MTIME
    mode: str = "664"


class FakeFS:
    def __init__(self) -> None:
        self.files: Dict[str, FakeFile] = {}
        self.probes: Dict[str, dict] = {}
        self.lock = threading.Lock()

    def add(self, path: str, data: bytes, mtime: int = MTIME, probe: Optional[dict] = None) -> str:
        with self.lock:
            self.files[path] = FakeFile(data, mtime)
            if probe is not None:
                self.probes[path] = probe
        return path

    def exists(self, path: str) -> bool:
        return path in self.files


class MiniShell:
    """Interprets the small command vocabulary the relay sends over SSH."""

    def __init__(self, fs: FakeFS) -> None:
        self.fs = fs
        self.commands: List[str] = []
        self.transports: List["FakeTransport"] = []
        self.ffmpeg_runs: List[List[str]] = []
        self.ffmpeg_fail = False
        self.ffmpeg_delay = 0.0
        self.ffmpeg_active = 0
        self.ffmpeg_peak = 0
        self.chunk_delay = 0.0
        self.hang_after: Optional[int] = None
        self.fail_open_sessions = 0

    # ---- Transport factory ----
    def connect(self, host) -> "FakeTransport":
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def connects(self) -> int:
        return len(self.transports)

    @property
    def channels(self) -> List["FakeChannel"]:
        return [c for t in self.transports for c in t.channels]

    def count(self, program: str) -> int:
        return len([c for c in self.commands if program in _programs(c)])

    # ---- Execution ----
    def execute(self, command: str) -> Tuple[bytes, bytes, int, bool]:
        self.commands.append(command)
        data, err, status, hang = b"", b"", 0, False
        for argv in _stages(command):
            data, stage_err, status, stage_hang = self._run(argv, data)
            err += stage_err
            hang = hang or stage_hang
        return data, err, status, hang

    def _run(self, argv: List[str], stdin: bytes) -> Tuple[bytes, bytes, int, bool]:
        name = argv[0]
        if name == "timeout":
            return self._run(argv[2:], stdin)
        handler = getattr(self, f"_cmd_{name}", None)
        if handler is None:
            return b"", f"{name}: command not found".encode(), 127, False
        return handler(argv[1:], stdin)

    def _read_stream(self, data: bytes) -> Tuple[bytes, bytes, int, bool]:
        if self.hang_after is not None:
            return data[: self.hang_after], b"", 0, True
        return data, b"", 0, False

    def _cmd_true(self, args, stdin):
        return b"", b"", 0, False

    def _cmd_sleep(self, args, stdin):
        return b"", b"", 0, True

    def _cmd_stat(self, args, stdin):
        path = args[-1]
        f = self.fs.files.get(path)
        if f is None:
            return b"", f"stat: cannot statx '{path}': No such file or directory".encode(), 1, False
        kind = "regular empty file" if not f.data else "regular file"
        return f"{len(f.data)} {f.mtime} {kind}\n".encode(), b"", 0, False

    def _cmd_test(self, args, stdin):
        return b"", b"", 0 if self.fs.exists(args[-1]) else 1, False

    def _cmd_cat(self, args, stdin):
        f = self.fs.files.get(args[-1])
        if f is None:
            return b"", b"cat: No such file or directory", 1, False
        return self._read_stream(f.data)

    def _cmd_dd(self, args, stdin):
        opts = dict(a.split("=", 1) for a in args)
        f = self.fs.files.get(opts["if"])
        if f is None:
            return b"", b"dd: failed to open: No such file or directory", 1, False
        bs, skip, count = int(opts["bs"]), int(opts.get("skip", 0)), int(opts["count"])
        return self._read_stream(f.data[skip * bs: (skip + count) * bs])

    def _cmd_tail(self, args, stdin):
        assert args[0] == "-c" and args[1].startswith("+")
        return stdin[int(args[1][1:]) - 1:], b"", 0, False

    def _cmd_head(self, args, stdin):
        assert args[0] == "-c"
        return stdin[: int(args[1])], b"", 0, False

    def _cmd_ffprobe(self, args, stdin):
        path = args[-1]
        probe = self.fs.probes.get(path)
        if probe is None or path not in self.fs.files:
            return b"", b"Invalid data found when processing input", 1, False
        if "-count_packets" in args:
            return f"{probe.get('packets', 0)}\n".encode(), b"", 0, False
        body = {k: v for k, v in probe.items() if k != "packets"}
        return json.dumps(body).encode(), b"", 0, False

    def _cmd_ffmpeg(self, args, stdin):
        self.ffmpeg_runs.append(list(args))
        with self.fs.lock:
            self.ffmpeg_active += 1
            self.ffmpeg_peak = max(self.ffmpeg_peak, self.ffmpeg_active)
        try:
            return self._transcode(args)
        finally:
            with self.fs.lock:
                self.ffmpeg_active -= 1

    def _transcode(self, args):
        if self.ffmpeg_delay:
            time.sleep(self.ffmpeg_delay)
        source = args[args.index("-i") + 1]
        output = args[-1]
        if self.ffmpeg_fail or source not in self.fs.files:
            return b"", b"Error while decoding stream #0:0\nConversion failed!", 1, False
        if "mjpeg" in args:
            self.fs.add(output, b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9")
        else:
            video = int(args[args.index("-b:v") + 1].rstrip("k"))
            audio = int(args[args.index("-b:a") + 1].rstrip("k"))
            self.fs.add(output, b"converted:" + self.fs.files[source].data[:1024],
                        probe=probe_json(video + audio))
        return b"", b"", 0, False

    def _cmd_mv(self, args, stdin):
        src, dst = args[-2], args[-1]
        with self.fs.lock:
            f = self.fs.files.pop(src, None)
            if f is None:
                return b"", b"mv: cannot stat: No such file or directory", 1, False
            self.fs.files[dst] = f
            if src in self.fs.probes:
                self.fs.probes[dst] = self.fs.probes.pop(src)
        return b"", b"", 0, False

    def _cmd_chmod(self, args, stdin):
        f = self.fs.files.get(args[-1])
        if f is None:
            return b"", b"chmod: No such file or directory", 1, False
        f.mode = args[0]
        return b"", b"", 0, False

    def _cmd_find(self, args, stdin):
        root = args[0].rstrip("/") + "/"
        patterns = [args[i + 1] for i, a in enumerate(args) if a == "-name"]
        cutoff = time.time() - int(args[args.index("-mmin") + 1].lstrip("+")) * 60
        with self.fs.lock:
            hits = sorted(
                p for p, f in self.fs.files.items()
                if p.startswith(root) and f.mtime < cutoff
                and any(fnmatch.fnmatchcase(posixpath.basename(p), pat) for pat in patterns)
            )
            if "-delete" in args:
                for p in hits:
                    self.fs.files.pop(p, None)
        return "".join(f"{p}\n" for p in hits).encode(), b"", 0, False

    def _cmd_rm(self, args, stdin):
        with self.fs.lock:
            self.fs.files.pop(args[-1], None)
        return b"", b"", 0, False


def _stages(command: str) -> List[List[str]]:
    lexer = shlex.shlex(command, posix=True, punctuation_chars="|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    stages: List[List[str]] = [[]]
    for token in lexer:
        if token == "|":
            stages.append([])
        else:
            stages[-1].append(token)
    return [s for s in stages if s]


def _programs(command: str) -> List[str]:
    names = []
    for argv in _stages(command):
        if argv[0] == "timeout":
            argv = argv[2:]
        names.append(argv[0])
    return names


class FakeChannel:
    def __init__(self, transport: "FakeTransport") -> None:
        self.transport = transport
        self.shell = transport.shell
        self.command: Optional[str] = None
        self.closed = False
        self._timeout: Optional[float] = None
        self._stdout = b""
        self._stderr = b""
        self._pos = 0
        self._err_pos = 0
        self._status = -1
        self._hang = False
        self._closed_event = threading.Event()

    def settimeout(self, timeout) -> None:
        self._timeout = timeout

    def exec_command(self, command: str) -> None:
        self.command = command
        self._stdout, self._stderr, self._status, self._hang = self.shell.execute(command)

    def recv_ready(self) -> bool:
        return self._pos < len(self._stdout)

    def recv(self, nbytes: int) -> bytes:
        if self.closed:
            return b""
        if self._pos < len(self._stdout):
            if self.shell.chunk_delay:
                time.sleep(self.shell.chunk_delay)
            chunk = self._stdout[self._pos: self._pos + nbytes]
            self._pos += len(chunk)
            return chunk
        if self._hang:
            if self._closed_event.wait(self._timeout):
                return b""
            raise socket.timeout("timed out")
        return b""

    def recv_stderr_ready(self) -> bool:
        return self._err_pos < len(self._stderr)

    def recv_stderr(self, nbytes: int) -> bytes:
        chunk = self._stderr[self._err_pos: self._err_pos + nbytes]
        self._err_pos += len(chunk)
        return chunk

    def exit_status_ready(self) -> bool:
        return not self._hang or self.closed

    def recv_exit_status(self) -> int:
        return self._status

    def close(self) -> None:
        self.closed = True
        self._closed_event.set()


class FakeTransport:
    def __init__(self, shell: MiniShell) -> None:
        self.shell = shell
        self.active = True
        self.channels: List[FakeChannel] = []

    def is_active(self) -> bool:
        return self.active

    def open_session(self, timeout=None) -> FakeChannel:
        if not self.active:
            raise paramiko.SSHException("SSH session not active")
        if self.shell.fail_open_sessions > 0:
            self.shell.fail_open_sessions -= 1
            self.active = False
            raise paramiko.SSHException("Channel closed")
        chan = FakeChannel(self)
        self.channels.append(chan)
        return chan

    def close(self) -> None:
        self.active = False


# ---- Fixtures ----
@pytest.fixture
def env(monkeypatch, tmp_path):
    values = {
        "JWT_SECRET": SECRET,
        "SSH_HOST": "content.example.net",
        "SSH_PASSWORD": "secret",
        "HOSTS_PATH": str(tmp_path / "hosts.json"),
        "RUNTIME_CONFIG_PATH": str(tmp_path / "runtime_config.json"),
        "COMMAND_TIMEOUT": "5",
        "RANGE_TIMEOUT": "2",
        "FULL_STREAM_TIMEOUT": "3",
        "STREAM_GRACE_SECONDS": "2",
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    monkeypatch.chdir(tmp_path)
    return values


@pytest.fixture
def cfg(env):
    return load_config()


@pytest.fixture
def fs():
    return FakeFS()


@pytest.fixture
def shell(fs):
    return MiniShell(fs)


@pytest.fixture
def hosts(cfg):
    return HostDirectory(cfg)


@pytest.fixture
async def remote(hosts, cfg, shell):
    r = RemoteExec(hosts, cfg, connector=shell.connect)
    yield r
    await r.close()


@pytest.fixture
def make_token():
    def _make(**claims) -> str:
        claims.setdefault("userId", 7)
        claims.setdefault("email", "alice@example.com")
        return jwt.encode(claims, SECRET, algorithm="HS256")
    return _make


@pytest.fixture
def auth(make_token):
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def server(cfg, remote, hosts):
    return StreamServer(cfg, remote, hosts, IdentityProvider(SECRET))


@pytest.fixture
async def client(aiohttp_client, server):
    c = await aiohttp_client(server.app)
    yield c
    await server.converter.close()


def video_id(relative: str) -> str:
    return encode_video_id(relative)


async def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()
