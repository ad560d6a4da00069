import asyncio
import dataclasses

import pytest

from conftest import HOST_ID, ROOT, payload, wait_for
from vodrelay.errors import RemoteExecError, RemoteTimeout
from vodrelay.remote import RemoteExec, path_exists, stat_path
from vodrelay.shell import quote_command


async def test_run_returns_output_and_exit_status(remote, fs):
    fs.add(f"{ROOT}/alice/a.mp4", b"x" * 42, mtime=1710000000)
    ok = await remote.run(HOST_ID, quote_command(["stat", "-L", "-c", "%s %Y %F", f"{ROOT}/alice/a.mp4"]))
    assert ok.ok
    assert ok.text().startswith("42 1710000000 regular")

    missing = await remote.run(HOST_ID, quote_command(["stat", f"{ROOT}/alice/none.mp4"]))
    assert missing.exit_status == 1
    assert "No such file" in missing.error_text()


async def test_stat_and_exists_helpers(remote, fs):
    fs.add(f"{ROOT}/alice/a b.mp4", b"abc")
    info = await stat_path(remote, HOST_ID, f"{ROOT}/alice/a b.mp4")
    assert (info.size, info.mtime) == (3, 1700000000)
    assert await stat_path(remote, HOST_ID, f"{ROOT}/alice/none.mp4") is None
    assert await path_exists(remote, HOST_ID, f"{ROOT}/alice/a b.mp4")
    assert not await path_exists(remote, HOST_ID, f"{ROOT}/alice/none.mp4")


async def test_connection_is_reused(remote, shell):
    for _ in range(5):
        await remote.run(HOST_ID, "true")
    assert shell.connects == 1
    assert remote.active_channels(HOST_ID) == 0


async def test_concurrent_commands_share_a_bounded_pool(cfg, hosts, shell):
    cfg = dataclasses.replace(cfg, max_connections_per_host=2, max_channels_per_connection=3)
    remote = RemoteExec(hosts, cfg, connector=shell.connect)
    try:
        results = await asyncio.gather(*[remote.run(HOST_ID, "true") for _ in range(20)])
        assert len(results) == 20
        assert shell.connects <= 2
        assert remote.active_channels(HOST_ID) == 0
    finally:
        await remote.close()


async def test_timeout_is_distinct_from_failure(remote, shell):
    with pytest.raises(RemoteTimeout):
        await remote.run(HOST_ID, "sleep 100", timeout=0.3)
    assert remote.active_channels(HOST_ID) == 0
    assert shell.channels[-1].closed


async def test_timeout_reconnects_on_next_use(remote, shell):
    await remote.run(HOST_ID, "true")
    with pytest.raises(RemoteTimeout):
        await remote.run(HOST_ID, "sleep 100", timeout=0.3)
    assert (await remote.run(HOST_ID, "true")).ok
    assert shell.connects == 2
    assert remote.connection_count(HOST_ID) == 1


async def test_stream_timeout_reconnects_on_next_use(remote, fs, shell):
    fs.add(f"{ROOT}/alice/a.mp4", payload(1000))
    shell.hang_after = 10
    stream = await remote.open_stream(HOST_ID, quote_command(["cat", f"{ROOT}/alice/a.mp4"]), idle_timeout=0.3)
    try:
        await stream.read()
        with pytest.raises(RemoteTimeout):
            await stream.read()
    finally:
        await stream.close()
    shell.hang_after = None
    assert (await remote.run(HOST_ID, "true")).ok
    assert shell.connects == 2


async def test_dead_transport_is_replaced(remote, shell):
    await remote.run(HOST_ID, "true")
    shell.transports[0].active = False
    result = await remote.run(HOST_ID, "true")
    assert result.ok
    assert shell.connects == 2
    assert remote.connection_count(HOST_ID) == 1


async def test_one_reconnect_per_call(remote, shell):
    await remote.run(HOST_ID, "true")
    shell.fail_open_sessions = 1
    assert (await remote.run(HOST_ID, "true")).ok
    assert shell.connects == 2

    shell.fail_open_sessions = 2
    with pytest.raises(RemoteExecError):
        await remote.run(HOST_ID, "true")
    assert shell.connects == 3
    assert remote.active_channels(HOST_ID) == 0


async def test_unknown_host_fails_cleanly(remote):
    with pytest.raises(RemoteExecError):
        await remote.run("42", "true")


async def test_stream_yields_all_bytes(remote, fs):
    data = payload(300_000)
    fs.add(f"{ROOT}/alice/a.mp4", data)
    async with await remote.open_stream(HOST_ID, quote_command(["cat", f"{ROOT}/alice/a.mp4"])) as stream:
        chunks = [chunk async for chunk in stream]
    assert b"".join(chunks) == data
    assert stream.eof and stream.closed
    assert stream.bytes_read == len(data)
    assert remote.active_channels(HOST_ID) == 0


async def test_stream_reports_non_zero_exit(remote):
    stream = await remote.open_stream(HOST_ID, quote_command(["cat", f"{ROOT}/alice/missing.mp4"]))
    try:
        with pytest.raises(RemoteExecError) as info:
            await stream.read()
        assert "status 1" in info.value.message
    finally:
        await stream.close()
    assert remote.active_channels(HOST_ID) == 0


async def test_stream_idle_timeout(remote, fs, shell):
    fs.add(f"{ROOT}/alice/a.mp4", payload(1000))
    shell.hang_after = 10
    stream = await remote.open_stream(HOST_ID, quote_command(["cat", f"{ROOT}/alice/a.mp4"]), idle_timeout=0.3)
    try:
        assert len(await stream.read()) == 10
        with pytest.raises(RemoteTimeout):
            await stream.read()
    finally:
        await stream.close()
    assert remote.active_channels(HOST_ID) == 0


async def test_early_close_stops_the_remote_command(remote, fs, shell):
    fs.add(f"{ROOT}/alice/a.mp4", payload(1000))
    shell.hang_after = 10
    stream = await remote.open_stream(HOST_ID, quote_command(["cat", f"{ROOT}/alice/a.mp4"]))
    await stream.read()
    await stream.close()
    await stream.close()
    assert shell.channels[-1].closed
    assert remote.active_channels(HOST_ID) == 0
    # Connection stays in the pool
    assert (await remote.run(HOST_ID, "true")).ok
    assert shell.connects == 1


async def test_exhausted_pool_waits_for_a_free_channel(cfg, hosts, fs, shell):
    cfg = dataclasses.replace(cfg, max_connections_per_host=1, max_channels_per_connection=1)
    remote = RemoteExec(hosts, cfg, connector=shell.connect)
    fs.add(f"{ROOT}/alice/a.mp4", payload(1000))
    shell.hang_after = 10
    try:
        stream = await remote.open_stream(HOST_ID, quote_command(["cat", f"{ROOT}/alice/a.mp4"]))
        waiting = asyncio.ensure_future(remote.run(HOST_ID, "true"))
        await asyncio.sleep(0.2)
        assert not waiting.done()
        await stream.close()
        assert (await asyncio.wait_for(waiting, 5)).ok
        assert await wait_for(lambda: remote.active_channels(HOST_ID) == 0)
    finally:
        await remote.close()
