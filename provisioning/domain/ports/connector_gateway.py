from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol

from provisioning.domain.models import AnyTypeKind, ConnectorObject, ConnObjectPayload


@dataclass(frozen=True)
class ConnectorPage:
    """
    Назначение:
        Страница внешних записей, прочитанная коннектором.
    """

    page: int
    objects: list[ConnectorObject]


class ConnectorGatewayProtocol(Protocol):
    """
    Назначение/ответственность:
        Порт доступа к внешним системам через коннекторы ресурсов.
    Ошибки/исключения:
        - ConnectorError: транспорт/аутентификация/конфигурация.
        - ObjectNotFoundError: запись отсутствует (update/delete).
    """

    def search(
        self,
        resource: str,
        kind: AnyTypeKind,
        filter: Mapping[str, str] | None = None,
    ) -> Iterable[ConnectorPage]:
        """
        Контракт:
            Ленивая постраничная последовательность; filter: равенства по
            внешним атрибутам (AND), None: все записи.
        """
        ...

    def create(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> str: ...

    def update(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> str: ...

    def delete(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> None: ...


def read_connector_object(
    gateway: ConnectorGatewayProtocol,
    resource: str,
    kind: AnyTypeKind,
    key_attr: str,
    key_value: str,
) -> ConnectorObject | None:
    """
    Назначение:
        Прочитать одну внешнюю запись по значению connObjectKey.
    Контракт:
        None, если запись не найдена; ошибки коннектора пробрасываются.
    """
    for page in gateway.search(resource, kind, {key_attr: key_value}):
        for obj in page.objects:
            return obj
    return None
