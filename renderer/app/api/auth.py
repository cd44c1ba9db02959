"""
Shared-password gate.

When ``BASIC_AUTH_PASSWORD`` is set, every request must present it in one
of three places: the ``password`` query parameter, a ``password`` field
in an urlencoded form body, or the password half of a Basic
``Authorization`` header.
"""

from __future__ import annotations

import base64
import binascii
import hmac
from typing import Mapping, Optional
from urllib.parse import parse_qs

from renderer.app.config import RendererConfig

AUTH_CHALLENGE_MESSAGE = "Add ?password=YOUR_PASSWORD to the URL to access this service"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _matches(candidate: Optional[str], expected: str) -> bool:
    if candidate is None:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def _form_password(body: bytes) -> Optional[str]:
    try:
        values = parse_qs(body.decode("utf-8"), keep_blank_values=True)
    except UnicodeDecodeError:
        return None
    passwords = values.get("password")
    return passwords[0] if passwords else None


def _basic_password(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Basic "):
        return None
    try:
        decoded = base64.b64decode(authorization[6:], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    _, sep, password = decoded.partition(":")
    return password if sep else None


def validate_auth(
    config: RendererConfig,
    *,
    method: str,
    query: Mapping[str, str],
    headers: Mapping[str, str],
    body: bytes,
) -> bool:
    """Return True when the request may proceed."""
    if not config.auth_enabled:
        return True
    expected = config.BASIC_AUTH_PASSWORD.get_secret_value()

    if _matches(query.get("password"), expected):
        return True

    content_type = headers.get("content-type", "")
    if method == "POST" and body and FORM_CONTENT_TYPE in content_type:
        if _matches(_form_password(body), expected):
            return True

    return _matches(_basic_password(headers.get("authorization")), expected)
