import asyncio
import logging
import signal

from .auth import IdentityProvider
from .config import Config, load_config
from .convert import ConversionEngine
from .hosts import HostDirectory
from .probe import MediaProbe
from .remote import RemoteExec
from .web import StreamServer

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("vodrelay")


def build_server(cfg: Config) -> StreamServer:
    hosts = HostDirectory(cfg)
    remote = RemoteExec(hosts, cfg)
    identities = IdentityProvider(cfg.jwt_secret, cfg.jwt_algorithms)
    return StreamServer(
        cfg,
        remote,
        hosts,
        identities,
        probe=MediaProbe(remote, cfg),
        converter=ConversionEngine(remote, cfg),
    )


async def serve(cfg: Config) -> None:
    server = build_server(cfg)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops
            pass

    await server.start()
    logger.info(f"Serving content from {cfg.content_root} (default host {server.hosts.default_host_id})")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await server.stop()
        await server.converter.close()
        await server.remote.close()


def main():
    cfg = load_config()
    logging.getLogger().setLevel(getattr(logging, (cfg.log_level or "INFO"), logging.INFO))
    if not cfg.jwt_secret:
        raise RuntimeError("JWT_SECRET not set")
    asyncio.run(serve(cfg))


if __name__ == "__main__":
    main()
