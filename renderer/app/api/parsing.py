"""
Request body interpretation.

The endpoint accepts template data three ways: as a JSON object (with the
data optionally wrapped under ``data``), as an urlencoded form carrying a
``dataJson`` field, or not at all, in which case a built-in sample record
is rendered.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qs

from pydantic import BaseModel, ConfigDict

from renderer.app.api.auth import FORM_CONTENT_TYPE
from renderer.app.errors import RequestError


class ParseResult(BaseModel):
    data: Dict[str, Any]
    default_used: bool
    template_name: Optional[str] = None

    model_config = ConfigDict(frozen=True)


def build_default_data() -> Dict[str, Any]:
    return {
        "example": "default-render",
        "generatedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "fullName": "John Smith",
        "firstName": "John",
        "lastName": "Smith",
        "nhsNumber": "9990000000",
        "address_line_1": "Mr John Smith",
        "address_line_2": "221B Baker Street",
        "address_line_3": "London",
        "address_line_4": "NW1 6XE",
        "address_line_5": "United Kingdom",
        "address_line_6": "",
        "address_line_7": "",
    }


def _unwrap(parsed: Dict[str, Any]) -> Dict[str, Any]:
    inner = parsed.get("data")
    if isinstance(inner, dict):
        return inner
    return parsed


def parse_request_body(
    method: str,
    content_type: str,
    body: bytes,
    query: Mapping[str, str],
) -> ParseResult:
    """
    Interpret a request body as template data.

    Raises:
        RequestError: a JSON body is malformed or not an object.
    """
    query_template = query.get("template") or None

    if method.upper() == "GET":
        return ParseResult(data={}, default_used=False, template_name=query_template)

    text = body.decode("utf-8", errors="replace") if body else ""
    if not text.strip():
        return ParseResult(
            data=build_default_data(),
            default_used=True,
            template_name=query_template,
        )

    if FORM_CONTENT_TYPE in content_type.lower():
        return _parse_form(text, query_template)
    return _parse_json(text)


def _parse_form(text: str, query_template: Optional[str]) -> ParseResult:
    fields = parse_qs(text, keep_blank_values=True)
    data_json = (fields.get("dataJson") or [""])[0]
    form_template = (fields.get("template") or [""])[0] or None

    data = build_default_data()
    if data_json:
        try:
            parsed = json.loads(data_json)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            data = _unwrap(parsed)

    return ParseResult(
        data=data,
        default_used=not data_json,
        template_name=form_template or query_template,
    )


def _parse_json(text: str) -> ParseResult:
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        raise RequestError(f"Invalid JSON body: {exc}") from exc

    if not isinstance(parsed, dict):
        raise RequestError("Invalid JSON body: Body must be a JSON object")

    template = parsed.get("template")
    return ParseResult(
        data=_unwrap(parsed),
        default_used=False,
        template_name=template if isinstance(template, str) and template else None,
    )
