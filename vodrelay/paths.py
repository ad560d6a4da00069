import base64
import binascii
import posixpath
import re
from dataclasses import dataclass

from .auth import Identity
from .errors import AccessError, DecodeError
from .hosts import HostDirectory

VIDEO_EXTENSIONS = (
    ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv",
    ".3gp", ".3g2", ".ts", ".mpg", ".mpeg", ".ogv", ".m4v", ".asf",
)

_B64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


@dataclass(frozen=True)
class VideoRef:
    encoded_id: str
    path: str
    host_id: str
    relative_path: str

    @property
    def filename(self) -> str:
        return posixpath.basename(self.path)


def is_video_path(path: str) -> bool:
    return path.lower().endswith(VIDEO_EXTENSIONS)


def encode_video_id(relative_path: str) -> str:
    return base64.urlsafe_b64encode(relative_path.encode("utf-8")).decode("ascii").rstrip("=")


def decode_video_id(encoded_id: str) -> str:
    """Decode standard or URL-safe base64 (padding optional) into a UTF-8 path."""
    s = (encoded_id or "").strip().replace("-", "+").replace("_", "/")
    if not s or not _B64_RE.match(s):
        raise DecodeError()
    s = s.rstrip("=")
    if len(s) % 4 == 1:
        raise DecodeError()
    s += "=" * (-len(s) % 4)
    try:
        text = base64.b64decode(s, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        raise DecodeError()
    if not text.strip() or "\x00" in text:
        raise DecodeError()
    return text


class PathResolver:
    """Maps an encoded video id and an identity to an absolute path on the content host."""

    def __init__(self, content_root: str, hosts: HostDirectory) -> None:
        self.content_root = posixpath.normpath("/" + content_root.strip("/"))
        self._prefix = "/" if self.content_root == "/" else self.content_root + "/"
        self.hosts = hosts

    def absolute_path(self, decoded: str) -> str:
        candidate = decoded.strip()
        if not candidate.startswith(self._prefix):
            candidate = self._prefix + candidate.lstrip("/")
        full = posixpath.normpath(candidate)
        if not full.startswith(self._prefix) or full == self.content_root:
            raise AccessError("Path escapes the content root")
        return full

    def resolve(self, identity: Identity, encoded_id: str) -> VideoRef:
        decoded = decode_video_id(encoded_id)
        path = self.absolute_path(decoded)
        relative = path[len(self._prefix):]
        # The namespace has to be one of the directories above the file
        if identity.namespace not in relative.split("/")[:-1]:
            raise AccessError("Access denied to this video")
        return VideoRef(
            encoded_id=encoded_id,
            path=path,
            host_id=self.hosts.host_for_subject(identity.subject_id),
            relative_path=relative,
        )

    def relative_path(self, path: str) -> str:
        if path.startswith(self._prefix):
            return path[len(self._prefix):]
        return path.lstrip("/")

    def namespace_dir(self, identity: Identity) -> str:
        """Top-level directory of ``identity``'s namespace under the content root."""
        return self._prefix + identity.namespace
