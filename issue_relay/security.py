"""Request authentication.

Webhook deliveries are authenticated by GitHub's HMAC signature; the admin API
can additionally be put behind HTTP Basic auth.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

SIGNATURE_HEADER = "X-Hub-Signature-256"


def verify_webhook_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Check GitHub's X-Hub-Signature-256 header against the raw body."""
    if not signature_header:
        return False
    scheme, _, digest = signature_header.partition("=")
    if scheme != "sha256" or not digest:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, digest)


@dataclass(frozen=True)
class BasicAuthCredentials:
    username: str
    password: str

    def matches(self, username: str, password: str) -> bool:
        # Evaluate both so timing does not reveal which one was wrong.
        user_ok = secrets.compare_digest(self.username, username)
        pass_ok = secrets.compare_digest(self.password, password)
        return user_ok and pass_ok


def parse_basic_authorization(header_value: str | None) -> BasicAuthCredentials | None:
    """Credentials from an ``Authorization: Basic ...`` header, or None."""
    scheme, _, encoded = (header_value or "").partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None

    try:
        username, sep, password = base64.b64decode(encoded, validate=True).decode("utf-8").partition(":")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if not sep:
        return None
    return BasicAuthCredentials(username=username, password=password)


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """HTTP Basic auth for everything outside ``open_prefixes``.

    GitHub cannot send Basic credentials, so the webhook routes stay open and
    rely on their signature.
    """

    def __init__(
        self,
        app,
        *,
        username: str,
        password: str,
        open_prefixes: tuple[str, ...] = ("/health", "/webhooks/"),
        realm: str = "IssueRelay",
    ):
        super().__init__(app)
        self._expected = BasicAuthCredentials(username=username, password=password)
        self._open_prefixes = open_prefixes
        self._challenge = f'Basic realm="{realm}", charset="UTF-8"'

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self._open_prefixes):
            creds = parse_basic_authorization(request.headers.get("Authorization"))
            if creds is None or not creds.matches(self._expected.username, self._expected.password):
                return Response("Unauthorized", status_code=401, headers={"WWW-Authenticate": self._challenge})
        return await call_next(request)
