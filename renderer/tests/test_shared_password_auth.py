import base64

from renderer.app.api.auth import validate_auth
from renderer.tests.fixtures.factories import make_config

FORM = "application/x-www-form-urlencoded"


def _basic(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return f"Basic {token}"


def _check(config, *, method="GET", query=None, headers=None, body=b""):
    return validate_auth(
        config,
        method=method,
        query=query or {},
        headers=headers or {},
        body=body,
    )


def test_auth_disabled_when_password_unset(tmp_path):
    config = make_config(tmp_path)
    assert _check(config) is True


def test_empty_password_disables_auth(tmp_path):
    config = make_config(tmp_path, BASIC_AUTH_PASSWORD="")
    assert _check(config) is True


def test_query_password(tmp_path):
    config = make_config(tmp_path, BASIC_AUTH_PASSWORD="s3cret")

    assert _check(config, query={"password": "s3cret"}) is True
    assert _check(config, query={"password": "wrong"}) is False
    assert _check(config) is False


def test_form_password_only_for_post(tmp_path):
    config = make_config(tmp_path, BASIC_AUTH_PASSWORD="s3cret")
    headers = {"content-type": FORM}

    assert _check(config, method="POST", headers=headers, body=b"password=s3cret&dataJson=") is True
    assert _check(config, method="GET", headers=headers, body=b"password=s3cret") is False
    assert _check(config, method="POST", headers={"content-type": "application/json"},
                  body=b"password=s3cret") is False


def test_basic_authorization_header(tmp_path):
    config = make_config(tmp_path, BASIC_AUTH_PASSWORD="s3cret")

    assert _check(config, headers={"authorization": _basic("anyone", "s3cret")}) is True
    assert _check(config, headers={"authorization": _basic("anyone", "nope")}) is False
    assert _check(config, headers={"authorization": "Basic !!!not-base64"}) is False
    assert _check(config, headers={"authorization": "Bearer s3cret"}) is False
