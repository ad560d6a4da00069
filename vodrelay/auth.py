import logging
from dataclasses import dataclass
from typing import List, Optional

import jwt
from aiohttp import web

from .errors import AuthError

logger = logging.getLogger("vodrelay.auth")


@dataclass(frozen=True)
class Identity:
    subject_id: str
    namespace: str
    bitrate_limit: Optional[int] = None


def _bearer_token(request: web.Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        token = header[7:].strip()
        if token:
            return token
    return request.query.get("token") or None


class IdentityProvider:
    """Turns a bearer JWT into an ``Identity`` (subject, namespace, bitrate ceiling)."""

    def __init__(self, secret: str, algorithms: Optional[List[str]] = None) -> None:
        if not secret:
            logger.warning("JWT secret is empty; every token will be rejected")
        self.secret = secret
        self.algorithms = algorithms or ["HS256"]

    def identify(self, request: web.Request) -> Identity:
        token = _bearer_token(request)
        if not token:
            raise AuthError("Access token required")
        return self.identity_from_token(token)

    def identity_from_token(self, token: str) -> Identity:
        if not self.secret:
            raise AuthError("Invalid token")
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except jwt.PyJWTError as e:
            logger.info(f"Rejected bearer token: {e}")
            raise AuthError("Invalid token")
        return identity_from_claims(claims)


def identity_from_claims(claims: dict) -> Identity:
    subject = claims.get("userId", claims.get("sub", claims.get("id")))
    if subject is None or str(subject) == "":
        raise AuthError("Token has no subject")
    subject_id = str(subject)

    namespace = claims.get("namespace") or claims.get("login")
    if not namespace:
        email = claims.get("email")
        if isinstance(email, str) and "@" in email:
            namespace = email.split("@", 1)[0]
        else:
            namespace = f"user_{subject_id}"
    namespace = str(namespace)
    if not namespace or "/" in namespace or namespace in (".", "..") or "\x00" in namespace:
        raise AuthError("Token has an invalid namespace")

    bitrate = claims.get("bitrate")
    try:
        bitrate_limit = int(bitrate) if bitrate is not None else None
    except (TypeError, ValueError):
        bitrate_limit = None
    if bitrate_limit is not None and bitrate_limit <= 0:
        bitrate_limit = None
    return Identity(subject_id=subject_id, namespace=namespace, bitrate_limit=bitrate_limit)
