"""
DOCX template rendering and library-mediated PDF export.

The render engine fills a DOCX template with request data using docxtpl
(Jinja2 markers such as ``{{ d.fullName }}``; the data is exposed as ``d``).
When a ``convert_to`` target is requested, the filled document is handed
to a running unoserver instance, which exports it through LibreOffice with
the requested filter.

The underlying libraries are synchronous; the engine runs them in worker
threads so callers stay non-blocking.
"""

from __future__ import annotations

import asyncio
import io
import logging
import socket
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Tuple

from docxtpl import DocxTemplate
from unoserver.client import UnoClient

logger = logging.getLogger(__name__)


class TemplateRenderEngine(Protocol):
    async def render(
        self,
        template_path: Path,
        data: Mapping[str, Any],
        *,
        convert_to: Optional[str] = None,
    ) -> bytes:
        ...


def split_convert_target(convert_to: str) -> Tuple[str, Optional[str]]:
    """
    Split ``"pdf:writer_pdf_Export"`` into ``("pdf", "writer_pdf_Export")``.

    A bare ``"pdf"`` leaves the filter choice to LibreOffice.
    """
    extension, _, filtername = convert_to.partition(":")
    return extension, (filtername or None)


def check_reachable(host: str, port: int, *, timeout: float) -> None:
    """Raise ``OSError`` unless something accepts TCP connections on ``host:port``."""
    with socket.create_connection((host, port), timeout=timeout):
        pass


def library_version() -> str:
    try:
        return version("docxtpl")
    except PackageNotFoundError:
        return "unknown"


class DocxTemplateEngine:
    """
    docxtpl renderer with unoserver-backed export.

    Every export starts with a short TCP connect to the endpoint.
    ``UnoClient`` retries a refused connection for tens of seconds; the
    connect check makes an unreachable unoserver fail with ``ConnectionRefusedError``
    at once, which the orchestrator classifies as "engine not found".
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 2003,
        connect_timeout: float = 1.0,
    ) -> None:
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout

    async def render(
        self,
        template_path: Path,
        data: Mapping[str, Any],
        *,
        convert_to: Optional[str] = None,
    ) -> bytes:
        document = await asyncio.to_thread(self.fill_template, template_path, data)
        if convert_to is None:
            return document
        return await asyncio.to_thread(self.export, document, convert_to)

    @staticmethod
    def fill_template(template_path: Path, data: Mapping[str, Any]) -> bytes:
        template = DocxTemplate(str(template_path))
        template.render({"d": dict(data)})
        buffer = io.BytesIO()
        template.save(buffer)
        return buffer.getvalue()

    def export(self, document: bytes, convert_to: str) -> bytes:
        check_reachable(self._host, self._port, timeout=self._connect_timeout)
        extension, filtername = split_convert_target(convert_to)
        client = UnoClient(server=self._host, port=str(self._port))
        result = client.convert(
            indata=document,
            convert_to=extension,
            filtername=filtername,
        )
        if not result:
            raise RuntimeError("No result from conversion engine")
        return bytes(result)
