from __future__ import annotations

import json

import httpx
import pytest

from provisioning.domain.exceptions import ConnectorError, ObjectNotFoundError
from provisioning.domain.models import AnyTypeKind, ConnObjectPayload
from provisioning.infra.connectors.base import ConnectorSettings
from provisioning.infra.connectors.rest_connector import RestConnector

USER = AnyTypeKind.USER


def make_connector(transport: httpx.BaseTransport, *, retries: int = 0, **properties) -> RestConnector:
    props = {
        "base_url": "https://hr.local/api/",
        "path": {"USER": "/users", "GROUP": "groups"},
        "username": "svc",
        "password": "secret",
        "uid_attr": "login",
    }
    props.update(properties)
    return RestConnector(
        "HR",
        props,
        ConnectorSettings(http_timeout_seconds=5, http_retries=retries, retry_backoff_seconds=0),
        transport=transport,
    )


def payload(key: str = "jdoe", **attrs) -> ConnObjectPayload:
    return ConnObjectPayload("login", key, {"login": [key], **attrs})


def test_read_page_sends_paging_and_filter_params():
    seen = {}

    def responder(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("authorization", "")
        return httpx.Response(200, json=[{"login": "jdoe", "mail": "j@x.com", "roles": ["a", "b"]}])

    connector = make_connector(httpx.MockTransport(responder))

    objects = connector.read_page(USER, {"login": "jdoe"}, page=2, page_size=50)

    assert seen["path"] == "/api/users"
    assert seen["params"] == {"page": "2", "rows": "50", "login": "jdoe"}
    assert seen["auth"].startswith("Basic ")
    assert objects[0].uid == "jdoe"
    assert objects[0].attrs["roles"] == ["a", "b"]
    assert objects[0].attrs["mail"] == ["j@x.com"]


def test_read_page_extracts_wrapped_items_and_deleted_flag():
    def responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"items": [{"login": "old", "gone": "true"}, {"login": "new"}]})

    connector = make_connector(httpx.MockTransport(responder), deleted_attr="gone")

    objects = connector.read_page(USER, None, page=1, page_size=10)

    assert [(o.uid, o.deleted) for o in objects] == [("old", True), ("new", False)]


def test_unexpected_response_format():
    def responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"total": 0})

    connector = make_connector(httpx.MockTransport(responder))

    with pytest.raises(ConnectorError) as exc:
        connector.read_page(USER, None, page=1, page_size=10)
    assert exc.value.code == "INVALID_JSON"


def test_create_posts_body_and_returns_server_uid():
    def responder(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/api/users"
        assert json.loads(request.content) == {"login": "jdoe", "groups": ["a", "b"]}
        return httpx.Response(201, json={"login": "jdoe-1"})

    connector = make_connector(httpx.MockTransport(responder))

    assert connector.create(USER, payload(groups=["a", "b"])) == "jdoe-1"


def test_update_missing_object_raises_not_found():
    def responder(request: httpx.Request) -> httpx.Response:
        assert request.method == "PUT"
        assert request.url.path == "/api/users/j%20doe"
        return httpx.Response(404, json={"error": "missing"})

    connector = make_connector(httpx.MockTransport(responder))

    with pytest.raises(ObjectNotFoundError):
        connector.update(USER, payload("j doe"))


def test_token_auth_and_unauthorized_code():
    def responder(request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == "Bearer t0ken"
        return httpx.Response(401, text="denied")

    connector = make_connector(httpx.MockTransport(responder), token="t0ken")

    with pytest.raises(ConnectorError) as exc:
        connector.delete(USER, payload())
    assert exc.value.code == "UNAUTHORIZED"
    assert exc.value.retryable is False
    assert exc.value.details["status_code"] == 401


def test_server_errors_are_retried_inside_the_client():
    calls = {"count": 0}

    def responder(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json=[])

    connector = make_connector(httpx.MockTransport(responder), retries=2)

    assert connector.read_page(USER, None, page=1, page_size=10) == []
    assert connector.client.getRetryAttempts() == 2


def test_exhausted_retries_are_not_retryable():
    def responder(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    connector = make_connector(httpx.MockTransport(responder), retries=1)

    with pytest.raises(ConnectorError) as exc:
        connector.read_page(USER, None, page=1, page_size=10)
    assert exc.value.code == "NETWORK_ERROR"
    assert exc.value.retryable is False
    assert connector.client.getRetryAttempts() == 1


def test_configuration_errors():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[]))

    with pytest.raises(ConnectorError):
        RestConnector("HR", {"path": "/users"}, transport=transport)
    with pytest.raises(ConnectorError):
        make_connector(transport).read_page(AnyTypeKind.ANY_OBJECT, None, page=1, page_size=10)
