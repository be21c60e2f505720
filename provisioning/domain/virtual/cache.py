from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Sequence

from provisioning.domain.propagation_models import PropagationStatus


@dataclass(frozen=True)
class VirAttrCacheKey:
    entity_key: str
    schema: str
    resource: str


@dataclass(frozen=True)
class VirAttrCacheValue:
    """
    Назначение:
        Закэшированные значения виртуального атрибута.
    Поля:
        values: упорядоченные значения, как их вернул ресурс.
        version: монотонный токен версии (общий счётчик процесса).
    """

    values: tuple[str, ...]
    version: int


class VirAttrCache:
    """
    Назначение/ответственность:
        In-process кэш значений виртуальных атрибутов по ключу
        (сущность, схема, ресурс).

    Инварианты/гарантии:
        - Записи не истекают по времени, удаляются только явной инвалидацией.
        - Загрузка и write-through по одному ключу сериализуются; загрузки
          разных ключей друг друга не ждут, глобальная блокировка на время
          загрузки не удерживается.
        - Блокировка ключа живёт, пока у неё есть владелец или ожидающий.
        - Загрузка, начавшаяся до инвалидации, значение в кэш не кладёт.
    """

    def __init__(self) -> None:
        self._entries: dict[VirAttrCacheKey, VirAttrCacheValue] = {}
        self._mutex = threading.Lock()
        self._key_locks: dict[VirAttrCacheKey, list] = {}
        self._versions = itertools.count(1)
        self._global_generation = 0
        self._resource_generation: dict[str, int] = {}
        self._entity_generation: dict[str, int] = {}
        self._schema_generation: dict[str, int] = {}

    @contextmanager
    def _key_lock(self, key: VirAttrCacheKey) -> Iterator[None]:
        # запись: [lock, число владельцев и ожидающих]
        with self._mutex:
            entry = self._key_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._mutex:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[key]

    def _generation(self, key: VirAttrCacheKey) -> tuple[int, int, int, int]:
        return (
            self._global_generation,
            self._resource_generation.get(key.resource, 0),
            self._entity_generation.get(key.entity_key, 0),
            self._schema_generation.get(key.schema, 0),
        )

    def _store_if_current(
        self,
        key: VirAttrCacheKey,
        values: Sequence[str],
        generation: tuple[int, int, int, int],
    ) -> VirAttrCacheValue | None:
        with self._mutex:
            if self._generation(key) != generation:
                return None
            value = VirAttrCacheValue(values=tuple(values), version=next(self._versions))
            self._entries[key] = value
            return value

    def get(self, key: VirAttrCacheKey) -> VirAttrCacheValue | None:
        with self._mutex:
            return self._entries.get(key)

    def put(self, key: VirAttrCacheKey, values: Sequence[str]) -> VirAttrCacheValue:
        with self._key_lock(key):
            with self._mutex:
                value = VirAttrCacheValue(values=tuple(values), version=next(self._versions))
                self._entries[key] = value
                return value

    def get_or_load(self, key: VirAttrCacheKey, loader: Callable[[], Sequence[str]]) -> list[str]:
        """
        Назначение:
            Чтение с загрузкой при промахе.

        Контракт:
            - Попадание возвращает значения без изменений.
            - Ошибка loader пробрасывается, кэш не заполняется.
        """
        cached = self.get(key)
        if cached is not None:
            return list(cached.values)
        with self._key_lock(key):
            cached = self.get(key)
            if cached is not None:
                return list(cached.values)
            with self._mutex:
                generation = self._generation(key)
            values = list(loader())
            self._store_if_current(key, values, generation)
            return values

    def write_through(
        self,
        key: VirAttrCacheKey,
        values: Sequence[str],
        propagate: Callable[[], PropagationStatus],
    ) -> PropagationStatus:
        """
        Назначение:
            Синхронная пропагация нового значения; запись в кэш только при SUCCESS.
        """
        with self._key_lock(key):
            with self._mutex:
                generation = self._generation(key)
            status = propagate()
            if status.ok:
                self._store_if_current(key, values, generation)
            return status

    def invalidate_entity(self, entity_key: str) -> int:
        with self._mutex:
            self._entity_generation[entity_key] = self._entity_generation.get(entity_key, 0) + 1
            return self._drop(lambda key: key.entity_key == entity_key)

    def invalidate_resource(self, resource: str) -> int:
        with self._mutex:
            self._resource_generation[resource] = self._resource_generation.get(resource, 0) + 1
            return self._drop(lambda key: key.resource == resource)

    def invalidate_schema(self, schema: str) -> int:
        with self._mutex:
            self._schema_generation[schema] = self._schema_generation.get(schema, 0) + 1
            return self._drop(lambda key: key.schema == schema)

    def clear(self) -> int:
        with self._mutex:
            self._global_generation += 1
            removed = len(self._entries)
            self._entries.clear()
            return removed

    def size(self) -> int:
        with self._mutex:
            return len(self._entries)

    def _drop(self, predicate: Callable[[VirAttrCacheKey], bool]) -> int:
        doomed = [key for key in self._entries if predicate(key)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)
