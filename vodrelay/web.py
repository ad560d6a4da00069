import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web

from .auth import Identity, IdentityProvider
from .config import Config
from .convert import (
    JOB_DONE,
    ConversionEngine,
    ConversionJob,
    ConversionOptions,
    converted_path,
    estimate_converted_size,
    is_derivative,
    playable_path,
    thumbnail_path,
    validate_time_offset,
)
from .errors import ConversionError, InvalidRequest, NotFound, ProbeError, RangeUnsatisfiable, RelayError
from .hosts import HostDirectory
from .paths import PathResolver, VideoRef, encode_video_id, is_video_path
from .probe import MediaProbe, build_verdict, unprobeable_verdict
from .remote import RemoteExec, RemoteFile, stat_path
from .streamer import CORS_HEADERS, RangeStreamer, is_satisfiable

logger = logging.getLogger("vodrelay.web")

MAX_BATCH_ITEMS = 100
MIN_VIDEO_BITRATE_KBPS = 100


def error_body(message: str) -> Dict[str, str]:
    return {"error": message, "timestamp": datetime.now(timezone.utc).isoformat()}


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn errors raised before a response is prepared into JSON bodies."""
    try:
        return await handler(request)
    except RangeUnsatisfiable as e:
        headers = {"Content-Range": f"bytes */{e.total_size}", "Accept-Ranges": "bytes"}
        headers.update(e.headers)
        return web.Response(status=416, headers=headers)
    except RelayError as e:
        if e.status >= 500:
            # Details stay in the log
            logger.error(f"{request.method} {request.path} failed: {e.message}")
            return web.json_response(error_body(e.public_message), status=e.status)
        return web.json_response(error_body(e.message), status=e.status)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return web.json_response(error_body(e.reason), status=e.status)
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception(f"Unhandled error in {request.method} {request.path}")
        return web.json_response(error_body("Internal server error"), status=500)


@web.middleware
async def preflight_middleware(request: web.Request, handler):
    """Answer CORS preflight for every path before routing gets a say."""
    if request.method != "OPTIONS":
        return await handler(request)
    headers = dict(CORS_HEADERS)
    headers["Access-Control-Max-Age"] = "86400"
    return web.Response(status=204, headers=headers)


async def _add_cors(request: web.Request, response: web.StreamResponse) -> None:
    response.headers.setdefault("Access-Control-Allow-Origin", CORS_HEADERS["Access-Control-Allow-Origin"])
    response.headers.setdefault("Access-Control-Expose-Headers", CORS_HEADERS["Access-Control-Expose-Headers"])


class StreamServer:
    def __init__(
        self,
        cfg: Config,
        remote: RemoteExec,
        hosts: HostDirectory,
        identities: IdentityProvider,
        probe: Optional[MediaProbe] = None,
        converter: Optional[ConversionEngine] = None,
    ) -> None:
        self.cfg = cfg
        self.remote = remote
        self.hosts = hosts
        self.identities = identities
        self.resolver = PathResolver(cfg.content_root, hosts)
        self.probe = probe or MediaProbe(remote, cfg)
        self.converter = converter or ConversionEngine(remote, cfg)
        self.streamer = RangeStreamer(remote, cfg)
        self.app = web.Application(middlewares=[preflight_middleware, error_middleware])
        self.app.on_response_prepare.append(_add_cors)
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        # Encoded ids may contain "/" (standard base64), hence the greedy patterns
        routes = [
            web.get("/stream/{video_id:.+}", self.handle_stream),
            web.get("/info/{video_id:.+}", self.handle_info),
            web.post("/convert/{video_id:.+}", self.handle_convert),
            web.post("/batch-convert", self.handle_batch_convert),
            web.get("/jobs/{job_id}", self.handle_job),
            web.get("/thumbnail/{video_id:.+}", self.handle_thumbnail),
            web.delete("/cleanup", self.handle_cleanup),
        ]
        self.app.add_routes(routes)

    async def start(self):
        if self.runner is not None:
            return
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host=self.cfg.http_host, port=self.cfg.http_port)
        await self.site.start()
        logger.info(f"Listening on {self.cfg.http_host}:{self.cfg.http_port}")

    async def stop(self):
        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None

    # ---- Helpers ----
    def _base_url(self) -> str:
        if self.cfg.public_base_url:
            return self.cfg.public_base_url.rstrip("/")
        host = self.cfg.http_host if self.cfg.http_host != "0.0.0.0" else "127.0.0.1"
        return f"http://{host}:{self.cfg.http_port}"

    def _url(self, kind: str, path: str) -> str:
        return f"{self._base_url()}/{kind}/{encode_video_id(self.resolver.relative_path(path))}"

    def _ceiling(self, identity: Identity) -> int:
        return identity.bitrate_limit or self.cfg.default_bitrate_limit

    def _authorize(self, request: web.Request) -> Tuple[Identity, VideoRef]:
        identity = self.identities.identify(request)
        ref = self.resolver.resolve(identity, request.match_info["video_id"])
        return identity, ref

    async def _stat(self, ref: VideoRef) -> RemoteFile:
        remote_file = await stat_path(self.remote, ref.host_id, ref.path)
        if remote_file is None or remote_file.size == 0:
            raise NotFound()
        return remote_file

    @staticmethod
    async def _json_body(request: web.Request) -> Dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequest("Request body must be JSON")
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return body

    def _options_from(self, body: Dict[str, Any], identity: Identity) -> ConversionOptions:
        ceiling = self._ceiling(identity)
        bitrate = body.get("bitrate", ceiling)
        if isinstance(bitrate, bool):
            raise InvalidRequest("Bitrate must be a positive integer (kbps)")
        try:
            bitrate = int(bitrate)
        except (TypeError, ValueError):
            raise InvalidRequest("Bitrate must be a positive integer (kbps)")
        if bitrate > ceiling:
            logger.info(f"Clamping requested bitrate {bitrate} to {ceiling} kbps for subject {identity.subject_id}")
            bitrate = ceiling
        options = ConversionOptions(
            bitrate_kbps=bitrate,
            resolution=str(body.get("resolution") or "1920x1080"),
            quality=str(body.get("quality") or "fast"),
        )
        options.validate()
        return options

    def _job_payload(self, job: ConversionJob) -> Dict[str, Any]:
        payload = job.to_dict()
        payload["source_path"] = self.resolver.relative_path(job.source_path)
        payload["target_path"] = self.resolver.relative_path(job.target_path)
        payload["status_url"] = f"{self._base_url()}/jobs/{job.job_id}"
        if payload["result"]:
            payload["result"]["source_path"] = payload["source_path"]
            payload["result"]["output_path"] = payload["target_path"]
        if job.state == JOB_DONE:
            payload["stream_url"] = self._url("stream", job.target_path)
        return payload

    async def _playable_variant(
        self, request: web.Request, identity: Identity, ref: VideoRef, remote_file: RemoteFile
    ) -> Tuple[RemoteFile, Dict[str, str]]:
        """
        Pick the file to serve for ``ref``.

        A compatible file is served as-is. An incompatible one is swapped for its
        converted copy when that exists; otherwise a background conversion is
        queued and the original is served this time. A Range header that no
        candidate can satisfy is refused before anything is probed or queued.
        """
        if is_derivative(ref.path):
            return remote_file, {}
        ceiling = self._ceiling(identity)
        target = playable_path(ref.path, ceiling)
        converted = await stat_path(self.remote, ref.host_id, target)
        if converted is not None and converted.size == 0:
            converted = None

        range_header = request.headers.get("Range")
        candidates = [remote_file] + ([converted] if converted else [])
        if not any(is_satisfiable(range_header, c.size) for c in candidates):
            raise self.streamer.unsatisfiable(remote_file)

        verdict = await self.probe.check_compatibility(ref.path, ref.host_id, ceiling, remote_file)
        if verdict.compatible:
            return remote_file, {}
        if converted is not None:
            logger.info(f"Serving converted copy {target} for {ref.path}")
            return converted, {}

        # Leave room for the audio track so the output lands under the ceiling
        video_bitrate = max(MIN_VIDEO_BITRATE_KBPS, ceiling - ConversionOptions.audio_bitrate_kbps)
        job = self.converter.submit(
            ref.path, target, ref.host_id,
            ConversionOptions(bitrate_kbps=video_bitrate),
            subject_id=identity.subject_id,
        )
        logger.info(f"{ref.path} needs conversion ({verdict.reason}); serving original while job {job.job_id} runs")
        return remote_file, {"X-Conversion-Job": job.job_id}

    # ---- Routes ----
    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        identity, ref = self._authorize(request)
        remote_file = await self._stat(ref)
        extra: Dict[str, str] = {}
        if self.cfg.auto_convert and is_video_path(ref.path):
            remote_file, extra = await self._playable_variant(request, identity, ref, remote_file)
        return await self.streamer.serve(request, remote_file, ref.host_id, extra)

    async def handle_info(self, request: web.Request) -> web.Response:
        identity, ref = self._authorize(request)
        remote_file = await self._stat(ref)
        ceiling = self._ceiling(identity)
        try:
            meta = await self.probe.probe(ref.path, ref.host_id, ceiling, remote_file)
        except ProbeError as e:
            logger.warning(f"Could not probe {ref.path}: {e.message}")
            meta = None

        verdict = build_verdict(meta, ceiling) if meta else unprobeable_verdict(ref.path, remote_file.size, ceiling)
        info: Dict[str, Any] = {
            "video_id": ref.encoded_id,
            "filename": ref.filename,
            "path": ref.relative_path,
            "size": remote_file.size,
            "modified": remote_file.mtime,
            "metadata": meta.to_dict() if meta else None,
            "compatibility": verdict.to_dict(),
            "urls": {
                "stream": self._url("stream", ref.path),
                "info": self._url("info", ref.path),
                "thumbnail": self._url("thumbnail", ref.path),
            },
        }
        if meta is not None:
            info["metadata"]["path"] = ref.relative_path

        if verdict.needs_conversion:
            target = playable_path(ref.path, ceiling)
            converted = await stat_path(self.remote, ref.host_id, target)
            info["conversion"] = {
                "target": self.resolver.relative_path(target),
                "available": converted is not None and converted.size > 0,
                "estimated_size": estimate_converted_size(
                    remote_file.size, verdict.current_bitrate, ceiling
                ),
            }
            if info["conversion"]["available"]:
                info["conversion"]["url"] = self._url("stream", target)

        if request.query.get("integrity", "").lower() in ("1", "true", "yes"):
            info["integrity"] = await self.probe.check_integrity(ref.path, ref.host_id)
        return web.json_response(info)

    async def handle_convert(self, request: web.Request) -> web.Response:
        identity, ref = self._authorize(request)
        body = await self._json_body(request)
        options = self._options_from(body, identity)
        await self._stat(ref)
        target = converted_path(ref.path, options.bitrate_kbps)

        if body.get("background"):
            job = self.converter.submit(ref.path, target, ref.host_id, options, subject_id=identity.subject_id)
            return web.json_response(self._job_payload(job), status=202)

        result = await self.converter.convert(ref.path, target, ref.host_id, options)
        self.probe.cache.invalidate(ref.host_id, target)
        payload = result.to_dict()
        payload["source_path"] = ref.relative_path
        payload["output_path"] = self.resolver.relative_path(target)
        payload["video_id"] = encode_video_id(payload["output_path"])
        payload["stream_url"] = self._url("stream", target)
        return web.json_response(payload)

    async def handle_batch_convert(self, request: web.Request) -> web.Response:
        identity = self.identities.identify(request)
        body = await self._json_body(request)
        video_ids = body.get("video_ids")
        if not isinstance(video_ids, list) or not video_ids:
            raise InvalidRequest("video_ids must be a non-empty list")
        if len(video_ids) > MAX_BATCH_ITEMS:
            raise InvalidRequest(f"At most {MAX_BATCH_ITEMS} videos per batch")
        options = self._options_from(body, identity)

        items: List[Dict[str, Any]] = []
        for video_id in video_ids:
            try:
                ref = self.resolver.resolve(identity, str(video_id))
                await self._stat(ref)
                target = converted_path(ref.path, options.bitrate_kbps)
                job = self.converter.submit(ref.path, target, ref.host_id, options, subject_id=identity.subject_id)
                items.append({"video_id": video_id, "job": self._job_payload(job)})
            except RelayError as e:
                message = e.public_message if e.status >= 500 else e.message
                items.append({"video_id": video_id, "error": message, "status": e.status})
        queued = len([i for i in items if "job" in i])
        logger.info(f"Batch conversion for subject {identity.subject_id}: {queued}/{len(items)} queued")
        return web.json_response({"queued": queued, "total": len(items), "items": items}, status=202)

    async def handle_cleanup(self, request: web.Request) -> web.Response:
        identity = self.identities.identify(request)
        host_id = self.hosts.host_for_subject(identity.subject_id)
        directory = self.resolver.namespace_dir(identity)
        removed = await self.converter.cleanup_staging(host_id, directory)
        return web.json_response({
            "removed": [self.resolver.relative_path(p) for p in removed],
            "count": len(removed),
            "max_age_minutes": self.cfg.staging_max_age_minutes,
        })

    async def handle_job(self, request: web.Request) -> web.Response:
        identity = self.identities.identify(request)
        job = self.converter.get_job(request.match_info["job_id"])
        if job is None or job.subject_id != identity.subject_id:
            raise NotFound("Job not found")
        return web.json_response(self._job_payload(job))

    async def handle_thumbnail(self, request: web.Request) -> web.StreamResponse:
        _, ref = self._authorize(request)
        time_offset = request.query.get("time")
        if time_offset is not None:
            validate_time_offset(time_offset)
        await self._stat(ref)
        output = thumbnail_path(ref.path, time_offset)
        thumb = await stat_path(self.remote, ref.host_id, output)
        if thumb is None or thumb.size == 0:
            await self.converter.generate_thumbnail(ref.path, output, ref.host_id, time_offset)
            thumb = await stat_path(self.remote, ref.host_id, output)
            if thumb is None or thumb.size == 0:
                raise ConversionError(f"Thumbnail {output} missing after generation")
        return await self.streamer.serve(request, thumb, ref.host_id)
