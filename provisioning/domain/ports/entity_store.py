from __future__ import annotations

from typing import Iterable, Protocol

from provisioning.domain.models import AnyEntity, AnyTypeKind


class EntityStoreProtocol(Protocol):
    """
    Назначение/ответственность:
        Порт хранилища сущностей. Индексы/транзакции: забота реализации.
    Контракт:
        - read возвращает снимок (копию) или None.
        - save/delete применяются немедленно (commit).
    """

    def read(self, key: str) -> AnyEntity | None: ...

    def save(self, entity: AnyEntity) -> AnyEntity: ...

    def delete(self, key: str) -> AnyEntity | None: ...

    def search(self, kind: AnyTypeKind, realm: str = "/") -> Iterable[AnyEntity]: ...

    def find_by_attr(self, kind: AnyTypeKind, name: str, value: str) -> list[AnyEntity]:
        """
        Контракт:
            name: встроенное поле (key/name/realm) или plain-атрибут;
            совпадение по любому из значений.
        """
        ...
