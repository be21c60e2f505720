from __future__ import annotations

import json
from typing import Iterator

from provisioning.domain.models import AnyEntity, AnyTypeKind
from provisioning.infra.store.codec import entity_from_dict, entity_to_dict
from provisioning.infra.store.sqlite_engine import SqliteEngine

_FIELD_COLUMNS = {"key": "key", "name": "name", "realm": "realm"}


class SqliteEntityStore:
    """
    Назначение/ответственность:
        Хранилище сущностей в SQLite. Plain-атрибуты дублируются в
        entity_attrs для поиска по значению (корреляция).
        Значения виртуальных атрибутов не хранятся.
    """

    def __init__(self, engine: SqliteEngine) -> None:
        self.engine = engine

    def read(self, key: str) -> AnyEntity | None:
        row = self.engine.fetchone("SELECT payload FROM entities WHERE key = ?", (key,))
        if row is None:
            return None
        return entity_from_dict(json.loads(row["payload"]))

    def save(self, entity: AnyEntity) -> AnyEntity:
        payload = json.dumps(entity_to_dict(entity), ensure_ascii=False)
        with self.engine.transaction():
            self.engine.execute(
                """
                INSERT INTO entities(key, kind, name, realm, payload, updated_at)
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    kind=excluded.kind,
                    name=excluded.name,
                    realm=excluded.realm,
                    payload=excluded.payload,
                    updated_at=CURRENT_TIMESTAMP
                """,
                (entity.key, entity.kind.value, entity.name, entity.realm, payload),
            )
            self.engine.execute("DELETE FROM entity_attrs WHERE entity_key = ?", (entity.key,))
            rows = [
                (entity.key, name, position, value)
                for name, values in entity.plain_attrs.items()
                for position, value in enumerate(values)
            ]
            if rows:
                self.engine.executemany(
                    "INSERT INTO entity_attrs(entity_key, name, position, value) VALUES (?, ?, ?, ?)",
                    rows,
                )
        return entity.copy()

    def delete(self, key: str) -> AnyEntity | None:
        with self.engine.transaction():
            existing = self.read(key)
            if existing is None:
                return None
            self.engine.execute("DELETE FROM entity_attrs WHERE entity_key = ?", (key,))
            self.engine.execute("DELETE FROM entities WHERE key = ?", (key,))
        return existing

    def search(self, kind: AnyTypeKind, realm: str = "/") -> Iterator[AnyEntity]:
        rows = self.engine.fetchall("SELECT payload FROM entities WHERE kind = ? ORDER BY name, key", (kind.value,))
        for row in rows:
            entity = entity_from_dict(json.loads(row["payload"]))
            if entity.in_realm(realm):
                yield entity

    def find_by_attr(self, kind: AnyTypeKind, name: str, value: str) -> list[AnyEntity]:
        column = _FIELD_COLUMNS.get(name)
        if column is not None:
            rows = self.engine.fetchall(
                f"SELECT payload FROM entities WHERE kind = ? AND {column} = ? ORDER BY key",
                (kind.value, value),
            )
        else:
            rows = self.engine.fetchall(
                """
                SELECT DISTINCT e.key, e.payload
                FROM entities e
                JOIN entity_attrs a ON a.entity_key = e.key
                WHERE e.kind = ? AND a.name = ? AND a.value = ?
                ORDER BY e.key
                """,
                (kind.value, name, value),
            )
        return [entity_from_dict(json.loads(row["payload"])) for row in rows]

    def count(self, kind: AnyTypeKind | None = None) -> int:
        if kind is None:
            row = self.engine.fetchone("SELECT COUNT(*) FROM entities")
        else:
            row = self.engine.fetchone("SELECT COUNT(*) FROM entities WHERE kind = ?", (kind.value,))
        return int(row[0])
