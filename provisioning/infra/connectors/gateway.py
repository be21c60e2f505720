from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterator, Mapping, TypeVar

from provisioning.common.fingerprint import build_fingerprint
from provisioning.common.sanitize import maskSecrets
from provisioning.domain.exceptions import ConnectorError, NotFoundError
from provisioning.domain.models import AnyTypeKind, ConnObjectPayload
from provisioning.domain.plugins.registry import PluginKind, create_plugin
from provisioning.domain.ports.connector_gateway import ConnectorPage
from provisioning.domain.ports.repositories import ResourceRepositoryProtocol
from provisioning.infra.connectors.base import Connector, ConnectorSettings
from provisioning.infra.logging.setup import getComponentLogger, logEvent

T = TypeVar("T")


class RoutingConnectorGateway:
    """
    Назначение/ответственность:
        Реализация ConnectorGatewayProtocol: выбирает коннектор по
        конфигурации ресурса и повторяет транзиентные сбои.

    Инварианты/гарантии:
        - Коннектор кэшируется по fingerprint конфигурации; изменённая
          конфигурация ресурса приводит к созданию нового коннектора.
        - Повторяются только ConnectorError с retryable=True
          (экспоненциальная задержка); ошибки аутентификации/конфигурации
          и ObjectNotFoundError пробрасываются сразу.
    """

    def __init__(
        self,
        resource_repo: ResourceRepositoryProtocol,
        *,
        settings: ConnectorSettings | None = None,
        retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        page_size: int = 100,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource_repo = resource_repo
        self.settings = settings or ConnectorSettings()
        self.retries = retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.page_size = page_size
        self.logger = logger or getComponentLogger("gateway")
        self._lock = threading.Lock()
        self._connectors: dict[str, tuple[str, Connector]] = {}

    def connector_for(self, resource_key: str) -> Connector:
        resource = self.resource_repo.get_resource(resource_key)
        if resource is None:
            raise NotFoundError("resource", resource_key)
        fingerprint = build_fingerprint(
            {"type": resource.connector.type, "properties": dict(resource.connector.properties)}
        )
        with self._lock:
            cached = self._connectors.get(resource_key)
            if cached is not None and cached[0] == fingerprint:
                return cached[1]
            connector = create_plugin(
                PluginKind.CONNECTOR,
                resource.connector.type,
                resource_key,
                resource.connector.properties,
                self.settings,
            )
            self._connectors[resource_key] = (fingerprint, connector)
        logEvent(
            self.logger,
            logging.DEBUG,
            None,
            "gateway",
            f"connector built resource={resource_key} type={resource.connector.type} "
            f"properties={maskSecrets(dict(resource.connector.properties))}",
        )
        return connector

    def evict(self, resource_key: str) -> None:
        with self._lock:
            cached = self._connectors.pop(resource_key, None)
        if cached is not None:
            cached[1].close()

    def close(self) -> None:
        with self._lock:
            connectors = list(self._connectors.values())
            self._connectors.clear()
        for _, connector in connectors:
            connector.close()

    def _with_retry(self, resource_key: str, operation: str, call: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return call()
            except ConnectorError as exc:
                if not exc.retryable or attempt >= self.retries:
                    raise
                logEvent(
                    self.logger,
                    logging.WARNING,
                    None,
                    "gateway",
                    f"retry resource={resource_key} op={operation} attempt={attempt + 1}: {exc}",
                )
                time.sleep(self.retry_backoff_seconds * (2 ** attempt))
                attempt += 1

    def search(
        self,
        resource: str,
        kind: AnyTypeKind,
        filter: Mapping[str, str] | None = None,
    ) -> Iterator[ConnectorPage]:
        """
        Возвращает страницы записей; останавливается на пустой или неполной странице.
        """
        connector = self.connector_for(resource)
        page = 1
        while True:
            objects = self._with_retry(
                resource,
                "search",
                lambda: connector.read_page(kind, filter, page, self.page_size),
            )
            if not objects:
                break
            yield ConnectorPage(page=page, objects=objects)
            if len(objects) < self.page_size:
                break
            page += 1

    def create(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        connector = self.connector_for(resource)
        return self._with_retry(resource, "create", lambda: connector.create(kind, payload))

    def update(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        connector = self.connector_for(resource)
        return self._with_retry(resource, "update", lambda: connector.update(kind, payload))

    def delete(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> Any:
        connector = self.connector_for(resource)
        return self._with_retry(resource, "delete", lambda: connector.delete(kind, payload))
