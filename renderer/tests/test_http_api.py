import base64
import json

import pytest
from fastapi.testclient import TestClient

from renderer.app.context import build_context, get_context
from renderer.app.main import create_app
from renderer.app.services.conversion import PLACEHOLDER_PDF
from renderer.tests.fixtures.factories import make_config
from renderer.tests.fixtures.fakes import FakeEngine


@pytest.fixture
def make_client(tmp_path):
    clients = []

    def factory(**overrides):
        overrides.setdefault("SKIP_CONVERT", True)
        ctx = build_context(make_config(tmp_path, **overrides), engine=FakeEngine())
        app = create_app()
        app.dependency_overrides[get_context] = lambda: ctx
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, ctx

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


# ------------------------------------------------------------------
# POST /
# ------------------------------------------------------------------

def test_empty_post_renders_default_data(make_client):
    client, _ = make_client()

    response = client.post("/")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["content-disposition"] == 'inline; filename="render.pdf"'
    assert response.content == PLACEHOLDER_PDF


def test_json_post_renders(make_client):
    client, _ = make_client()

    response = client.post("/", json={"data": {"fullName": "Ada"}})

    assert response.status_code == 200
    assert response.content.startswith(b"%PDF-")


def test_form_post_renders(make_client):
    client, _ = make_client()

    response = client.post(
        "/",
        data={"dataJson": json.dumps({"data": {"fullName": "Ada"}})},
    )

    assert response.status_code == 200
    assert response.content == PLACEHOLDER_PDF


def test_invalid_json_is_400(make_client):
    client, _ = make_client()

    response = client.post(
        "/",
        content=b"{oops",
        headers={"content-type": "application/json"},
    )

    body = response.json()
    assert response.status_code == 400
    assert body["error"] == "RequestError"
    assert body["statusCode"] == 400
    assert body["message"].startswith("Invalid JSON body: ")
    assert "stack" not in body


def test_unknown_template_is_404(make_client):
    client, _ = make_client()

    response = client.post("/", json={"template": "missing", "data": {}})

    assert response.status_code == 404
    assert response.json()["error"] == "TemplateNotFoundError"


def test_warmup_failure_is_500_with_stack_in_debug(make_client):
    client, _ = make_client(SKIP_CONVERT=False, DEBUG_RENDER=True)

    response = client.post("/", json={"data": {}})

    body = response.json()
    assert response.status_code == 500
    assert body["error"] == "WarmupError"
    assert body["message"] == "LibreOffice not available after extraction"
    assert "Traceback" in body["stack"]


# ------------------------------------------------------------------
# GET /, /templates, /healthz
# ------------------------------------------------------------------

def test_input_form_shows_status(make_client):
    client, _ = make_client(BUILT_AT="2024-01-01T00:00:00Z")

    response = client.get("/")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "Template: OK" in response.text
    assert "Engine: Not initialised" in response.text
    assert "2024-01-01T00:00:00Z" in response.text
    assert "letter-template.docx" in response.text
    assert "<code>fullName</code>" in response.text


def test_templates_endpoint_lists_markers(make_client):
    client, _ = make_client()

    response = client.get("/templates")

    assert response.status_code == 200
    templates = response.json()
    assert [t["file"] for t in templates] == ["letter-template.docx"]
    assert "nhsNumber" in templates[0]["markers"]


def test_healthz_needs_no_auth_or_warmup(make_client):
    client, ctx = make_client(SKIP_CONVERT=False, BASIC_AUTH_PASSWORD="s3cret")

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "renderer"


# ------------------------------------------------------------------
# Authentication
# ------------------------------------------------------------------

def test_missing_password_is_challenged(make_client):
    client, _ = make_client(BASIC_AUTH_PASSWORD="s3cret")

    response = client.post("/")

    assert response.status_code == 401
    assert response.json() == {
        "error": "Authentication required",
        "statusCode": 401,
        "message": "Add ?password=YOUR_PASSWORD to the URL to access this service",
    }


@pytest.mark.parametrize(
    "kwargs",
    [
        {"params": {"password": "s3cret"}},
        {"data": {"password": "s3cret"}},
        {"headers": {"Authorization": "Basic " + base64.b64encode(b"u:s3cret").decode()}},
    ],
)
def test_password_accepted_from_each_source(make_client, kwargs):
    client, _ = make_client(BASIC_AUTH_PASSWORD="s3cret")

    response = client.post("/", **kwargs)

    assert response.status_code == 200
    assert response.content == PLACEHOLDER_PDF
