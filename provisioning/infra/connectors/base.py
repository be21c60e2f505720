from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from provisioning.domain.models import AnyTypeKind, ConnectorObject, ConnObjectPayload


@dataclass(frozen=True)
class ConnectorSettings:
    """
    Назначение:
        Общие параметры коннекторов из Settings (таймауты, ретраи HTTP).
    """

    http_timeout_seconds: float = 20.0
    http_retries: int = 3
    retry_backoff_seconds: float = 0.5


class Connector(Protocol):
    """
    Назначение/ответственность:
        Реализация доступа к одному ресурсу. Регистрируется в реестре
        CONNECTOR под id типа; фабрика: (resource_key, properties, settings).

    Ошибки/исключения:
        ConnectorError (retryable только для транзиентных сбоев),
        ObjectNotFoundError для update/delete отсутствующей записи.
    """

    def read_page(
        self,
        kind: AnyTypeKind,
        filter: Mapping[str, str] | None,
        page: int,
        page_size: int,
    ) -> list[ConnectorObject]: ...

    def create(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str: ...

    def update(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str: ...

    def delete(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> None: ...

    def close(self) -> None: ...


def to_values(raw: Any, separator: str | None = None) -> list[str]:
    """Нормализует значение внешнего атрибута в упорядоченный список строк."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(v) for v in raw if v is not None]
    text = str(raw)
    if text == "":
        return []
    if separator:
        return [part for part in text.split(separator) if part != ""]
    return [text]


def matches_filter(attrs: Mapping[str, list[str]], filter: Mapping[str, str] | None) -> bool:
    if not filter:
        return True
    return all(str(value) in attrs.get(name, []) for name, value in filter.items())


def is_truthy(value: Any) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "y", "deleted")


def property_for_kind(properties: Mapping[str, Any], name: str, kind: AnyTypeKind, default: Any = None) -> Any:
    """
    Значение свойства коннектора: словарь по видам сущностей
    ({"USER": "/users"}) или одно значение для всех видов.
    """
    value = properties.get(name, default)
    if isinstance(value, Mapping):
        return value.get(kind.value, default)
    return value
