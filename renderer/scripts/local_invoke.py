"""
Invoke the Lambda handler locally with a synthetic API Gateway v2 event.

Usage:
    python -m renderer.scripts.local_invoke                 POST, empty body (sample data)
    python -m renderer.scripts.local_invoke '{"data":{}}'   POST with explicit JSON
    python -m renderer.scripts.local_invoke --get           GET input form
    python -m renderer.scripts.local_invoke --form          POST urlencoded dataJson

SKIP_CONVERT is forced on, so no LibreOffice installation is needed.
"""

from __future__ import annotations

import argparse
import base64
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Optional
from urllib.parse import quote

DEFAULT_FORM_SAMPLE = '{"data":{"formField":"Example","number":123}}'


def build_event(
    method: str,
    *,
    body: str = "",
    content_type: Optional[str] = None,
) -> Dict[str, Any]:
    headers = {"content-type": content_type} if content_type else {}
    return {
        "version": "2.0",
        "routeKey": "$default",
        "rawPath": "/",
        "rawQueryString": "",
        "headers": headers,
        "requestContext": {
            "requestId": "local-test",
            "stage": "$default",
            "http": {
                "method": method,
                "path": "/",
                "protocol": "HTTP/1.1",
                "sourceIp": "127.0.0.1",
                "userAgent": "local-invoke",
            },
        },
        "body": body,
        "isBase64Encoded": False,
    }


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--get", action="store_true", help="send a GET request")
    mode.add_argument("--form", action="store_true", help="send urlencoded dataJson")
    parser.add_argument("payload", nargs="?", default="", help="JSON body or form sample")
    parser.add_argument("--out-dir", type=Path, default=Path.cwd())
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    os.environ["SKIP_CONVERT"] = "1"

    # Imported after SKIP_CONVERT is set; the app reads config on first use.
    from renderer.app.main import handler

    if args.get:
        event = build_event("GET")
    elif args.form:
        sample = args.payload or DEFAULT_FORM_SAMPLE
        event = build_event(
            "POST",
            body=f"dataJson={quote(sample, safe='')}",
            content_type="application/x-www-form-urlencoded",
        )
    else:
        event = build_event("POST", body=args.payload, content_type="application/json")

    context = SimpleNamespace(aws_request_id="local-aws-request-id")
    result = handler(event, context)

    status = result["statusCode"]
    print(f"Lambda result status: {status}")
    if status != 200:
        print(f"Error body: {result['body']}")
        return 1

    headers = {k.lower(): v for k, v in result.get("headers", {}).items()}
    content_type = headers.get("content-type", "")
    raw = result["body"]
    payload = base64.b64decode(raw) if result.get("isBase64Encoded") else raw.encode("utf-8")

    if "application/pdf" in content_type:
        out_path = args.out_dir / "local-output.pdf"
        out_path.write_bytes(payload)
        print(f"PDF written to {out_path}")
    elif "text/html" in content_type:
        out_path = args.out_dir / "local-health.html"
        out_path.write_bytes(payload)
        print(f"HTML written to {out_path}")
    else:
        print(f"JSON/Other response: {payload.decode('utf-8', errors='replace')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
