import base64
import time

import jwt
import pytest

from conftest import ROOT, SECRET
from vodrelay.auth import Identity, IdentityProvider, identity_from_claims
from vodrelay.errors import AccessError, AuthError, DecodeError
from vodrelay.hosts import HostDirectory
from vodrelay.paths import PathResolver, decode_video_id, encode_video_id, is_video_path

ALICE = Identity(subject_id="7", namespace="alice")


@pytest.fixture
def resolver(hosts):
    return PathResolver(ROOT, hosts)


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def test_decode_accepts_standard_urlsafe_and_unpadded():
    path = "alice/Ünïcode film?.mp4"
    assert decode_video_id(b64(path)) == path
    assert decode_video_id(encode_video_id(path)) == path
    assert decode_video_id(b64(path).rstrip("=")) == path


@pytest.mark.parametrize(
    "value",
    ["", "   ", "not*base64", "a", b64("\x00alice/x.mp4"), base64.b64encode(b"\xff\xfe\xfd").decode()],
)
def test_decode_rejects_garbage(value):
    with pytest.raises(DecodeError):
        decode_video_id(value)


def test_resolve_prefixes_the_content_root(resolver):
    ref = resolver.resolve(ALICE, b64("alice/folder1/movie.avi"))
    assert ref.path == f"{ROOT}/alice/folder1/movie.avi"
    assert ref.relative_path == "alice/folder1/movie.avi"
    assert ref.filename == "movie.avi"
    assert ref.host_id == "1"


def test_resolve_accepts_absolute_paths_under_the_root(resolver):
    ref = resolver.resolve(ALICE, b64(f"{ROOT}/alice/a.mp4"))
    assert ref.path == f"{ROOT}/alice/a.mp4"


@pytest.mark.parametrize(
    "relative",
    [
        "bob/movie.mp4",
        "bob/alice",
        "alicex/movie.mp4",
        "alice/../bob/movie.mp4",
        "../../../../etc/alice/passwd",
    ],
)
def test_resolve_enforces_the_namespace(resolver, relative):
    with pytest.raises(AccessError):
        resolver.resolve(ALICE, b64(relative))


def test_namespace_may_sit_deeper_in_the_tree(resolver):
    ref = resolver.resolve(ALICE, b64("tenants/alice/a.mp4"))
    assert ref.relative_path == "tenants/alice/a.mp4"


def test_subjects_map_to_their_host(cfg, tmp_path):
    (tmp_path / "hosts.json").write_text(
        '{"hosts": {"2": {"address": "10.0.0.2"}}, "subjects": {"7": "2"}}', encoding="utf-8"
    )
    resolver = PathResolver(ROOT, HostDirectory(cfg, str(tmp_path / "hosts.json")))
    assert resolver.resolve(ALICE, b64("alice/a.mp4")).host_id == "2"


def test_video_extensions():
    assert is_video_path("a/b.MKV")
    assert not is_video_path("a/b.txt")


@pytest.mark.parametrize(
    "claims,namespace",
    [
        ({"userId": 7, "email": "alice@example.com"}, "alice"),
        ({"userId": 7, "login": "alice2"}, "alice2"),
        ({"sub": "9"}, "user_9"),
        ({"id": 3, "namespace": "studio", "email": "x@y.z"}, "studio"),
    ],
)
def test_identity_namespace(claims, namespace):
    assert identity_from_claims(claims).namespace == namespace


def test_identity_bitrate_claim():
    assert identity_from_claims({"userId": 1, "bitrate": "1800"}).bitrate_limit == 1800
    assert identity_from_claims({"userId": 1, "bitrate": "lots"}).bitrate_limit is None
    assert identity_from_claims({"userId": 1}).bitrate_limit is None


@pytest.mark.parametrize("claims", [{}, {"userId": ""}, {"userId": 1, "namespace": ".."}, {"userId": 1, "login": "a/b"}])
def test_identity_rejects_bad_claims(claims):
    with pytest.raises(AuthError):
        identity_from_claims(claims)


def test_token_verification():
    provider = IdentityProvider(SECRET)
    good = jwt.encode({"userId": 7, "email": "alice@example.com"}, SECRET, algorithm="HS256")
    assert provider.identity_from_token(good) == Identity("7", "alice")

    forged = jwt.encode({"userId": 7, "email": "alice@example.com"}, "other", algorithm="HS256")
    expired = jwt.encode({"userId": 7, "exp": int(time.time()) - 10}, SECRET, algorithm="HS256")
    for token in (forged, expired, "garbage"):
        with pytest.raises(AuthError):
            provider.identity_from_token(token)


def test_empty_secret_rejects_everything():
    token = jwt.encode({"userId": 7}, SECRET, algorithm="HS256")
    with pytest.raises(AuthError):
        IdentityProvider("").identity_from_token(token)
