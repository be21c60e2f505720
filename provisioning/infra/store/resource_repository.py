from __future__ import annotations

import json

from provisioning.domain.models import AnyTypeKind, DerSchema, ExternalResource, SchemaCatalog, VirSchema
from provisioning.infra.store.codec import resource_from_dict, resource_to_dict
from provisioning.infra.store.sqlite_engine import SqliteEngine


class SqliteResourceRepository:
    """
    Назначение/ответственность:
        Конфигурация ресурсов (коннектор + маппинг) и справочник схем.
    """

    def __init__(self, engine: SqliteEngine) -> None:
        self.engine = engine

    def get_resource(self, key: str) -> ExternalResource | None:
        row = self.engine.fetchone("SELECT payload FROM resources WHERE key = ?", (key,))
        if row is None:
            return None
        return resource_from_dict(json.loads(row["payload"]))

    def list_resources(self) -> list[ExternalResource]:
        rows = self.engine.fetchall("SELECT payload FROM resources ORDER BY key")
        return [resource_from_dict(json.loads(row["payload"])) for row in rows]

    def save_resource(self, resource: ExternalResource) -> None:
        with self.engine.transaction():
            self.engine.execute(
                """
                INSERT INTO resources(key, payload, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET payload=excluded.payload, updated_at=CURRENT_TIMESTAMP
                """,
                (resource.key, json.dumps(resource_to_dict(resource), ensure_ascii=False)),
            )

    def delete_resource(self, key: str) -> bool:
        with self.engine.transaction():
            cur = self.engine.execute("DELETE FROM resources WHERE key = ?", (key,))
            return cur.rowcount > 0

    def catalog(self) -> SchemaCatalog:
        catalog = SchemaCatalog()
        for row in self.engine.fetchall("SELECT kind, name FROM plain_schemas"):
            catalog.add_plain(AnyTypeKind(row["kind"]), row["name"])
        for row in self.engine.fetchall("SELECT kind, name, expression FROM der_schemas"):
            catalog.add_derived(DerSchema(row["name"], AnyTypeKind(row["kind"]), row["expression"]))
        for row in self.engine.fetchall("SELECT kind, name, read_only FROM vir_schemas"):
            catalog.add_virtual(VirSchema(row["name"], AnyTypeKind(row["kind"]), bool(row["read_only"])))
        return catalog

    def save_plain_schema(self, kind: AnyTypeKind, name: str) -> None:
        with self.engine.transaction():
            self.engine.execute(
                "INSERT OR IGNORE INTO plain_schemas(kind, name) VALUES (?, ?)",
                (kind.value, name),
            )

    def save_der_schema(self, schema: DerSchema) -> None:
        with self.engine.transaction():
            self.engine.execute(
                """
                INSERT INTO der_schemas(kind, name, expression) VALUES (?, ?, ?)
                ON CONFLICT(kind, name) DO UPDATE SET expression=excluded.expression
                """,
                (schema.kind.value, schema.name, schema.expression),
            )

    def save_vir_schema(self, schema: VirSchema) -> None:
        with self.engine.transaction():
            self.engine.execute(
                """
                INSERT INTO vir_schemas(kind, name, read_only) VALUES (?, ?, ?)
                ON CONFLICT(kind, name) DO UPDATE SET read_only=excluded.read_only
                """,
                (schema.kind.value, schema.name, int(schema.read_only)),
            )

    def delete_vir_schema(self, kind: AnyTypeKind, name: str) -> bool:
        with self.engine.transaction():
            cur = self.engine.execute("DELETE FROM vir_schemas WHERE kind = ? AND name = ?", (kind.value, name))
            return cur.rowcount > 0
