import io
import socket
import time

import pytest
from docx import Document

from renderer.app.services import template_engine
from renderer.app.services.template_engine import (
    DocxTemplateEngine,
    library_version,
    split_convert_target,
)
from renderer.tests.fixtures.factories import make_docx_template

pytestmark = pytest.mark.anyio


class RecordingUnoClient:
    instances = []

    def __init__(self, server, port):
        self.server = server
        self.port = port
        self.calls = []
        self.result = b"%PDF-from-unoserver"
        RecordingUnoClient.instances.append(self)

    def convert(self, *, indata, convert_to, filtername):
        self.calls.append(
            {"indata": indata, "convert_to": convert_to, "filtername": filtername}
        )
        return self.result


@pytest.fixture
def uno_client(monkeypatch):
    RecordingUnoClient.instances = []
    monkeypatch.setattr(template_engine, "UnoClient", RecordingUnoClient)
    monkeypatch.setattr(template_engine, "check_reachable", lambda *a, **kw: None)
    return RecordingUnoClient


def _paragraph_texts(docx_bytes):
    return [p.text for p in Document(io.BytesIO(docx_bytes)).paragraphs]


async def test_render_without_target_returns_filled_docx(tmp_path):
    template = make_docx_template(
        tmp_path / "letter.docx",
        ["Dear {{ d.fullName }},", "NHS number: {{ d.nhsNumber }}"],
    )
    engine = DocxTemplateEngine()

    filled = await engine.render(
        template, {"fullName": "Ada Lovelace", "nhsNumber": "9990000000"}
    )

    assert _paragraph_texts(filled)[-2:] == [
        "Dear Ada Lovelace,",
        "NHS number: 9990000000",
    ]


async def test_render_with_target_exports_through_unoserver(tmp_path, uno_client):
    template = make_docx_template(tmp_path / "letter.docx", ["{{ d.name }}"])
    engine = DocxTemplateEngine(host="10.0.0.5", port=2002)

    pdf = await engine.render(template, {"name": "x"}, convert_to="pdf:writer_pdf_Export")

    assert pdf == b"%PDF-from-unoserver"
    client = uno_client.instances[0]
    assert (client.server, client.port) == ("10.0.0.5", "2002")
    call = client.calls[0]
    assert call["convert_to"] == "pdf"
    assert call["filtername"] == "writer_pdf_Export"
    assert call["indata"].startswith(b"PK")


async def test_empty_export_result_is_an_error(tmp_path, uno_client, monkeypatch):
    template = make_docx_template(tmp_path / "letter.docx", ["{{ d.name }}"])
    engine = DocxTemplateEngine()

    def empty(self, **kwargs):
        return b""

    monkeypatch.setattr(uno_client, "convert", empty)

    with pytest.raises(RuntimeError, match="No result from conversion engine"):
        await engine.render(template, {"name": "x"}, convert_to="pdf")


def test_refused_endpoint_fails_fast_without_client(tmp_path, monkeypatch):
    RecordingUnoClient.instances = []
    monkeypatch.setattr(template_engine, "UnoClient", RecordingUnoClient)
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    template = make_docx_template(tmp_path / "letter.docx", ["{{ d.name }}"])
    engine = DocxTemplateEngine(port=port, connect_timeout=0.5)
    document = engine.fill_template(template, {"name": "x"})

    start = time.monotonic()
    with pytest.raises(ConnectionRefusedError):
        engine.export(document, "pdf")

    assert time.monotonic() - start < 1
    assert RecordingUnoClient.instances == []


@pytest.mark.parametrize(
    "target, expected",
    [
        ("pdf", ("pdf", None)),
        ("pdf:writer_pdf_Export", ("pdf", "writer_pdf_Export")),
        ("pdf:writer_web_pdf_Export", ("pdf", "writer_web_pdf_Export")),
    ],
)
def test_split_convert_target(target, expected):
    assert split_convert_target(target) == expected


def test_library_version_is_reported():
    assert library_version() != ""
