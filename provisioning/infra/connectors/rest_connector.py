from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import quote

import httpx

from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import ConnectorError
from provisioning.domain.models import AnyTypeKind, ConnectorObject, ConnObjectPayload
from provisioning.domain.plugins.registry import PluginKind, register
from provisioning.infra.connectors.base import ConnectorSettings, is_truthy, property_for_kind, to_values
from provisioning.infra.http.connector_client import RestConnectorClient


class RestConnector:
    """
    Назначение/ответственность:
        Ресурс, доступный по REST API в JSON.

    Свойства ресурса:
        base_url, path (строка или {KIND: path}), username/password или token,
        uid_attr (по умолчанию "id"), deleted_attr (необязательно),
        tls_skip_verify, ca_file.

    Соглашение API:
        GET {path}?page=N&rows=M&<attr>=<value> -> массив объектов (или {"items": [...]})
        POST {path}, PUT {path}/{key}, DELETE {path}/{key}.
    """

    def __init__(
        self,
        resource: str,
        properties: Mapping[str, Any],
        settings: ConnectorSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        settings = settings or ConnectorSettings()
        base_url = properties.get("base_url")
        if not base_url:
            raise ConnectorError(
                "REST connector requires 'base_url'",
                resource=resource,
                code=ErrorCode.VALIDATION_ERROR.value,
            )
        self.resource = resource
        self.properties = dict(properties)
        self.uid_attr = str(properties.get("uid_attr") or "id")
        self.deleted_attr = properties.get("deleted_attr")
        self.client = RestConnectorClient(
            baseUrl=str(base_url),
            resource=resource,
            username=properties.get("username"),
            password=properties.get("password"),
            token=properties.get("token"),
            timeoutSeconds=float(properties.get("timeout_seconds") or settings.http_timeout_seconds),
            tlsSkipVerify=bool(properties.get("tls_skip_verify", False)),
            caFile=properties.get("ca_file"),
            retries=int(properties.get("retries", settings.http_retries)),
            retryBackoffSeconds=float(properties.get("retry_backoff_seconds", settings.retry_backoff_seconds)),
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _path(self, kind: AnyTypeKind) -> str:
        path = property_for_kind(self.properties, "path", kind)
        if not path:
            raise ConnectorError(
                f"no REST path configured for {kind.value}",
                resource=self.resource,
                code=ErrorCode.VALIDATION_ERROR.value,
            )
        return "/" + str(path).strip("/")

    def _item_path(self, kind: AnyTypeKind, key: str) -> str:
        return f"{self._path(kind)}/{quote(key, safe='')}"

    def read_page(
        self,
        kind: AnyTypeKind,
        filter: Mapping[str, str] | None,
        page: int,
        page_size: int,
    ) -> list[ConnectorObject]:
        params: dict[str, Any] = {"page": page, "rows": page_size}
        params.update(filter or {})
        reply = self.client.request("GET", self._path(kind), params=params)
        return [self._to_object(item) for item in self._extract_items(reply.body)]

    def create(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        body = self.client.request("POST", self._path(kind), json=self._body(payload)).body
        if isinstance(body, dict) and body.get(self.uid_attr) is not None:
            return str(body[self.uid_attr])
        return payload.key_value

    def update(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        key = payload.key_value
        self.client.request("PUT", self._item_path(kind, key), json=self._body(payload), objectKey=key)
        return key

    def delete(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> None:
        key = payload.key_value
        self.client.request("DELETE", self._item_path(kind, key), objectKey=key)

    @staticmethod
    def _body(payload: ConnObjectPayload) -> dict[str, Any]:
        return {name: values[0] if len(values) == 1 else list(values) for name, values in payload.attrs.items()}

    def _extract_items(self, data: Any) -> list[Any]:
        """Пытается вытащить массив объектов из разных возможных ключей."""
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ("items", "data", "result", "results"):
                if key in data and isinstance(data[key], list):
                    return data[key]
        raise ConnectorError(
            "Unexpected response format: no items array",
            resource=self.resource,
            code=ErrorCode.INVALID_JSON.value,
        )

    def _to_object(self, item: Any) -> ConnectorObject:
        if not isinstance(item, dict):
            raise ConnectorError(
                "Unexpected item format: object expected",
                resource=self.resource,
                code=ErrorCode.INVALID_JSON.value,
            )
        attrs = {str(name): to_values(value) for name, value in item.items()}
        deleted = bool(self.deleted_attr) and is_truthy(item.get(self.deleted_attr))
        return ConnectorObject(uid=str(item.get(self.uid_attr) or ""), attrs=attrs, deleted=deleted)


register(PluginKind.CONNECTOR, "rest", RestConnector)
