import asyncio
import concurrent.futures
import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import paramiko

from .config import Config
from .errors import RemoteExecError, RemoteTimeout
from .hosts import HostDirectory, RemoteHost
from .shell import quote_command

logger = logging.getLogger("vodrelay.remote")

Connector = Callable[[RemoteHost], paramiko.Transport]

_EOF = object()
_TRANSPORT_ERRORS = (paramiko.SSHException, OSError, EOFError)


@dataclass
class CommandResult:
    stdout: bytes
    stderr: bytes
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


@dataclass
class RemoteFile:
    path: str
    size: int
    mtime: int


def _load_key(path: str) -> paramiko.PKey:
    for key_cls in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(path)
        except paramiko.SSHException:
            continue
    raise RemoteExecError(f"Unsupported SSH key at {path}")


def connect_transport(host: RemoteHost, timeout: float = 10.0) -> paramiko.Transport:
    sock = socket.create_connection((host.address, host.port), timeout=timeout)
    transport = paramiko.Transport(sock)
    transport.banner_timeout = timeout
    transport.auth_timeout = timeout
    try:
        if host.key_path:
            key = _load_key(host.key_path)
            transport.connect(username=host.username, pkey=key)
        else:
            transport.connect(username=host.username, password=host.password)
    except Exception:
        transport.close()
        raise
    transport.set_keepalive(30)
    return transport


class _Connection:
    def __init__(self, transport: paramiko.Transport) -> None:
        self.transport = transport
        self.active = 0
        self.broken = False

    def alive(self) -> bool:
        return not self.broken and self.transport.is_active()


class _HostPool:
    def __init__(self) -> None:
        self.connections: List[_Connection] = []
        self.connecting = 0
        self.cond = asyncio.Condition()


class RemoteExec:
    """
    Runs shell commands on remote hosts over pooled SSH transports.

    Each transport multiplexes up to ``max_channels_per_connection`` exec
    channels and at most ``max_connections_per_host`` transports are kept per
    host. Connections are opened lazily and replaced when they die. Callers
    build command strings with ``vodrelay.shell``; nothing here validates them.
    """

    def __init__(self, hosts: HostDirectory, cfg: Config, connector: Optional[Connector] = None) -> None:
        self.hosts = hosts
        self.cfg = cfg
        self._connector = connector or (lambda host: connect_transport(host, cfg.connect_timeout_seconds))
        self._pools: Dict[str, _HostPool] = {}
        self._executor = ThreadPoolExecutor(max_workers=max(4, cfg.worker_threads), thread_name_prefix="vodrelay-ssh")

    # ---- Pool ----
    def _pool(self, host_id: str) -> _HostPool:
        pool = self._pools.get(str(host_id))
        if pool is None:
            pool = _HostPool()
            self._pools[str(host_id)] = pool
        return pool

    def active_channels(self, host_id: str) -> int:
        pool = self._pools.get(str(host_id))
        if pool is None:
            return 0
        return sum(c.active for c in pool.connections)

    def connection_count(self, host_id: str) -> int:
        pool = self._pools.get(str(host_id))
        if pool is None:
            return 0
        return len([c for c in pool.connections if c.alive()])

    async def _acquire(self, host_id: str) -> _Connection:
        pool = self._pool(host_id)
        max_channels = max(1, self.cfg.max_channels_per_connection)
        max_connections = max(1, self.cfg.max_connections_per_host)
        stale: List[_Connection] = []
        async with pool.cond:
            while True:
                for conn in list(pool.connections):
                    if not conn.alive() and conn.active <= 0:
                        pool.connections.remove(conn)
                        stale.append(conn)
                for conn in pool.connections:
                    if conn.alive() and conn.active < max_channels:
                        conn.active += 1
                        self._close_later(stale)
                        return conn
                if len(pool.connections) + pool.connecting < max_connections:
                    pool.connecting += 1
                    break
                await pool.cond.wait()
        self._close_later(stale)

        try:
            conn = await self._connect(host_id)
        except BaseException:
            async with pool.cond:
                pool.connecting -= 1
                pool.cond.notify_all()
            raise
        async with pool.cond:
            pool.connecting -= 1
            conn.active += 1
            pool.connections.append(conn)
            pool.cond.notify_all()
        return conn

    async def _connect(self, host_id: str) -> _Connection:
        host = self.hosts.get_host(host_id)
        loop = asyncio.get_running_loop()
        logger.info(f"Opening SSH connection to host {host_id} ({host.address}:{host.port})")
        try:
            transport = await loop.run_in_executor(self._executor, self._connector, host)
        except _TRANSPORT_ERRORS as e:
            raise RemoteExecError(f"SSH connection to host {host_id} failed: {e}") from e
        return _Connection(transport)

    async def _release(self, host_id: str, conn: _Connection, broken: bool = False) -> None:
        pool = self._pool(host_id)
        stale: List[_Connection] = []
        async with pool.cond:
            conn.active = max(0, conn.active - 1)
            if broken:
                conn.broken = True
            if not conn.alive() and conn.active == 0 and conn in pool.connections:
                pool.connections.remove(conn)
                stale.append(conn)
            pool.cond.notify_all()
        self._close_later(stale)

    def _close_later(self, conns: List[_Connection]) -> None:
        for conn in conns:
            logger.info("Dropping dead SSH connection")
            self._executor.submit(self._close_transport, conn.transport)

    @staticmethod
    def _close_transport(transport: paramiko.Transport) -> None:
        try:
            transport.close()
        except _TRANSPORT_ERRORS:
            logger.debug("Error while closing SSH transport", exc_info=True)

    # ---- Channels ----
    @staticmethod
    def _start_command(transport: paramiko.Transport, command: str, timeout: float) -> paramiko.Channel:
        chan = transport.open_session(timeout=timeout)
        chan.settimeout(timeout)
        chan.exec_command(command)
        return chan

    async def _open_channel(self, host_id: str, command: str, timeout: float) -> Tuple[_Connection, paramiko.Channel]:
        loop = asyncio.get_running_loop()
        # At most one reconnect per call
        for attempt in (1, 2):
            conn = await self._acquire(host_id)
            fut = loop.run_in_executor(self._executor, self._start_command, conn.transport, command, timeout)
            try:
                chan = await fut
                return conn, chan
            except _TRANSPORT_ERRORS as e:
                await self._release(host_id, conn, broken=True)
                if attempt == 2:
                    raise RemoteExecError(f"Remote exec on host {host_id} failed: {e}") from e
                logger.warning(f"Channel open failed on host {host_id} ({e}); reconnecting")
            except asyncio.CancelledError:
                fut.add_done_callback(_close_channel_result)
                await self._release(host_id, conn)
                raise
        raise RemoteExecError(f"Remote exec on host {host_id} failed")

    @staticmethod
    def _collect(chan: paramiko.Channel, timeout: float) -> CommandResult:
        deadline = time.monotonic() + timeout
        out: List[bytes] = []
        err: List[bytes] = []
        while True:
            idle = True
            if chan.recv_ready():
                out.append(chan.recv(65536))
                idle = False
            if chan.recv_stderr_ready():
                err.append(chan.recv_stderr(65536))
                idle = False
            if chan.exit_status_ready() and not chan.recv_ready() and not chan.recv_stderr_ready():
                break
            if time.monotonic() > deadline:
                chan.close()
                raise RemoteTimeout(f"Command timed out after {timeout:.0f}s")
            if idle:
                time.sleep(0.01)
        return CommandResult(b"".join(out), b"".join(err), chan.recv_exit_status())

    async def run(self, host_id: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a short-lived command and return its buffered output.

        A non-zero exit is returned in the result; transport failures raise
        ``RemoteExecError`` and an expired ``timeout`` raises ``RemoteTimeout``.
        """
        timeout = timeout or self.cfg.command_timeout_seconds
        conn, chan = await self._open_channel(host_id, command, timeout)
        loop = asyncio.get_running_loop()
        broken = False
        try:
            return await loop.run_in_executor(self._executor, self._collect, chan, timeout)
        except RemoteTimeout:
            # A silently dead transport only ever shows up as timeouts
            broken = True
            logger.warning(f"Command timed out after {timeout:.0f}s on host {host_id}: {command[:200]}")
            raise
        except _TRANSPORT_ERRORS as e:
            broken = True
            raise RemoteExecError(f"Remote exec on host {host_id} failed: {e}") from e
        finally:
            try:
                chan.close()
            except _TRANSPORT_ERRORS:
                broken = True
            await self._release(host_id, conn, broken)

    async def open_stream(self, host_id: str, command: str, idle_timeout: Optional[float] = None) -> "RemoteStream":
        """Start a long-lived command and return its stdout as a ``RemoteStream``."""
        idle = idle_timeout or self.cfg.range_timeout_seconds
        conn, chan = await self._open_channel(host_id, command, idle)
        stream = RemoteStream(
            owner=self,
            host_id=host_id,
            conn=conn,
            chan=chan,
            chunk_size=self.cfg.stream_chunk_size,
            max_buffered=self.cfg.stream_buffer_chunks,
            idle_timeout=idle,
            grace_seconds=self.cfg.stream_grace_seconds,
        )
        stream.start()
        return stream

    async def close(self) -> None:
        transports = []
        for pool in self._pools.values():
            async with pool.cond:
                transports.extend(c.transport for c in pool.connections)
                pool.connections = []
                pool.cond.notify_all()
        loop = asyncio.get_running_loop()
        for transport in transports:
            await loop.run_in_executor(self._executor, self._close_transport, transport)
        self._executor.shutdown(wait=False)


def _close_channel_result(fut: "asyncio.Future") -> None:
    if fut.cancelled() or fut.exception() is not None:
        return
    try:
        fut.result().close()
    except _TRANSPORT_ERRORS:
        pass


class RemoteStream:
    """
    Pull-based reader over a remote command's stdout.

    A worker thread moves channel data into a bounded queue; when the queue is
    full the worker stops calling ``recv`` so the SSH window closes and the
    remote process blocks. ``close()`` must be called on every exit path.
    """

    def __init__(
        self,
        owner: RemoteExec,
        host_id: str,
        conn: _Connection,
        chan: paramiko.Channel,
        chunk_size: int,
        max_buffered: int,
        idle_timeout: float,
        grace_seconds: float,
    ) -> None:
        self._owner = owner
        self._host_id = host_id
        self._conn = conn
        self._chan = chan
        self._chunk_size = max(1024, chunk_size)
        self._idle_timeout = idle_timeout
        self._grace = grace_seconds
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, max_buffered))
        self._stop = threading.Event()
        self._worker: Optional[asyncio.Future] = None
        self._closed = False
        self.eof = False
        self.bytes_read = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._worker = self._loop.run_in_executor(self._owner._executor, self._produce)

    def _put(self, item) -> bool:
        try:
            fut = asyncio.run_coroutine_threadsafe(self._queue.put(item), self._loop)
        except RuntimeError:
            return False
        while True:
            try:
                fut.result(timeout=0.25)
                return True
            except concurrent.futures.TimeoutError:
                if self._stop.is_set():
                    fut.cancel()
                    return False
            except concurrent.futures.CancelledError:
                return False

    def _drain_stderr(self) -> str:
        parts: List[bytes] = []
        try:
            while self._chan.recv_stderr_ready():
                parts.append(self._chan.recv_stderr(65536))
        except _TRANSPORT_ERRORS:
            pass
        return b"".join(parts).decode("utf-8", errors="replace").strip()[-500:]

    def _wait_exit_status(self) -> int:
        deadline = time.monotonic() + self._idle_timeout
        while not self._chan.exit_status_ready():
            if self._stop.is_set():
                return 0
            if time.monotonic() > deadline:
                raise RemoteTimeout("Remote command did not exit")
            time.sleep(0.01)
        return self._chan.recv_exit_status()

    def _produce(self) -> None:
        try:
            while not self._stop.is_set():
                chunk = self._chan.recv(self._chunk_size)
                if not chunk:
                    break
                if not self._put(chunk):
                    return
            if self._stop.is_set():
                return
            status = self._wait_exit_status()
            if status != 0:
                self._put(RemoteExecError(f"Remote command exited with status {status}: {self._drain_stderr()}"))
                return
            self._put(_EOF)
        except socket.timeout:
            if not self._stop.is_set():
                self._conn.broken = True
                self._put(RemoteTimeout(f"No data from remote for {self._idle_timeout:.0f}s"))
        except RemoteTimeout as e:
            if not self._stop.is_set():
                self._conn.broken = True
                self._put(e)
        except _TRANSPORT_ERRORS as e:
            if not self._stop.is_set():
                self._conn.broken = True
                self._put(RemoteExecError(f"Remote stream failed: {e}"))

    async def read(self) -> bytes:
        """Return the next chunk, or ``b""`` at end of stream."""
        if self.eof:
            return b""
        if self._closed:
            raise RemoteExecError("Remote stream is closed")
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=self._idle_timeout)
        except asyncio.TimeoutError:
            self._conn.broken = True
            raise RemoteTimeout(f"No data from remote for {self._idle_timeout:.0f}s")
        if item is _EOF:
            self.eof = True
            return b""
        if isinstance(item, Exception):
            raise item
        self.bytes_read += len(item)
        return item

    def __aiter__(self) -> "RemoteStream":
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if not chunk:
            raise StopAsyncIteration
        return chunk

    async def __aenter__(self) -> "RemoteStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the channel, stop the worker and hand the slot back to the pool."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        broken = self._conn.broken
        try:
            self._chan.close()
        except _TRANSPORT_ERRORS:
            broken = True
        if self._worker is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._worker), timeout=self._grace)
            except asyncio.TimeoutError:
                logger.warning(f"Stream worker on host {self._host_id} did not stop within {self._grace:.0f}s")
                broken = True
        await self._owner._release(self._host_id, self._conn, broken)


async def stat_path(remote: RemoteExec, host_id: str, path: str) -> Optional[RemoteFile]:
    """Size and mtime of a regular remote file, or None when it is missing."""
    result = await remote.run(host_id, quote_command(["stat", "-L", "-c", "%s %Y %F", path]))
    if not result.ok:
        return None
    parts = result.text().strip().split(" ", 2)
    try:
        size, mtime = int(parts[0]), int(parts[1])
    except (ValueError, IndexError):
        logger.warning(f"Unexpected stat output for {path}: {result.text()[:100]!r}")
        return None
    if len(parts) < 3 or not parts[2].startswith("regular"):
        return None
    return RemoteFile(path=path, size=size, mtime=mtime)


async def path_exists(remote: RemoteExec, host_id: str, path: str) -> bool:
    result = await remote.run(host_id, quote_command(["test", "-e", path]))
    return result.ok
