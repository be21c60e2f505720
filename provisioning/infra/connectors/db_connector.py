from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Any, Mapping

from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import ConnectorError, ObjectNotFoundError
from provisioning.domain.models import AnyTypeKind, ConnectorObject, ConnObjectPayload
from provisioning.domain.plugins.registry import PluginKind, register
from provisioning.infra.connectors.base import ConnectorSettings, is_truthy, property_for_kind, to_values


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class DbConnector:
    """
    Назначение/ответственность:
        Ресурс в виде таблицы SQLite. Колонки под новые атрибуты
        добавляются при записи; многозначные атрибуты склеиваются разделителем.

    Свойства ресурса:
        path, table (строка или {KIND: table}), key_column,
        deleted_column (необязательно), multi_value_separator (по умолчанию "|").
    """

    def __init__(self, resource: str, properties: Mapping[str, Any], settings: ConnectorSettings | None = None):
        path = properties.get("path")
        if not path:
            raise ConnectorError(
                "DB connector requires 'path'",
                resource=resource,
                code=ErrorCode.VALIDATION_ERROR.value,
            )
        self.resource = resource
        self.properties = dict(properties)
        self.path = str(path)
        self.separator = str(properties.get("multi_value_separator") or "|")
        self.deleted_column = properties.get("deleted_column")
        timeout = settings.http_timeout_seconds if settings else 5.0
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path, timeout=timeout, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

    def close(self) -> None:
        self.conn.close()

    def _table(self, kind: AnyTypeKind) -> str:
        table = property_for_kind(self.properties, "table", kind)
        if not table:
            raise ConnectorError(
                f"no table configured for {kind.value}",
                resource=self.resource,
                code=ErrorCode.VALIDATION_ERROR.value,
            )
        return str(table)

    def _key_column(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        return str(property_for_kind(self.properties, "key_column", kind) or payload.key_attr)

    def _run(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._lock:
                return self.conn.execute(sql, params)
        except sqlite3.OperationalError as exc:
            retryable = "locked" in str(exc) or "busy" in str(exc)
            raise ConnectorError(f"database error: {exc}", resource=self.resource, retryable=retryable) from exc
        except sqlite3.DatabaseError as exc:
            raise ConnectorError(f"database error: {exc}", resource=self.resource) from exc

    def _columns(self, table: str) -> list[str]:
        with self._lock:
            return [row[1] for row in self._run(f"PRAGMA table_info({_quote(table)})").fetchall()]

    def _ensure_table(self, table: str, key_column: str, names: list[str]) -> None:
        existing = self._columns(table)
        if not existing:
            self._run(f"CREATE TABLE IF NOT EXISTS {_quote(table)} ({_quote(key_column)} TEXT PRIMARY KEY)")
            existing = [key_column]
        for name in names:
            if name not in existing:
                self._run(f"ALTER TABLE {_quote(table)} ADD COLUMN {_quote(name)} TEXT")

    def read_page(
        self,
        kind: AnyTypeKind,
        filter: Mapping[str, str] | None,
        page: int,
        page_size: int,
    ) -> list[ConnectorObject]:
        table = self._table(kind)
        columns = self._columns(table)
        if not columns:
            return []
        key_column = str(property_for_kind(self.properties, "key_column", kind) or columns[0])
        where = ""
        params: list[Any] = []
        if filter:
            unknown = [name for name in filter if name not in columns]
            if unknown:
                return []
            clauses = []
            for name, value in filter.items():
                clauses.append(
                    f"({_quote(name)} = ? OR ('{self.separator}' || {_quote(name)} || '{self.separator}') LIKE ?)"
                )
                params.extend([value, f"%{self.separator}{value}{self.separator}%"])
            where = " WHERE " + " AND ".join(clauses)
        sql = f"SELECT * FROM {_quote(table)}{where} ORDER BY {_quote(key_column)} LIMIT ? OFFSET ?"
        params.extend([page_size, (page - 1) * page_size])
        with self._lock:
            rows = self._run(sql, tuple(params)).fetchall()
        result = []
        for row in rows:
            data = dict(row)
            attrs = {
                name: to_values(value, self.separator)
                for name, value in data.items()
                if name != self.deleted_column
            }
            deleted = bool(self.deleted_column) and is_truthy(data.get(self.deleted_column) or "")
            result.append(ConnectorObject(uid=str(data.get(key_column) or ""), attrs=attrs, deleted=deleted))
        return result

    def create(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        table = self._table(kind)
        key_column = self._key_column(kind, payload)
        row = {name: self.separator.join(values) for name, values in payload.attrs.items()}
        row[key_column] = payload.key_value
        self._ensure_table(table, key_column, list(row))
        names = list(row)
        try:
            with self._lock:
                self.conn.execute(
                    f"INSERT INTO {_quote(table)} ({', '.join(_quote(n) for n in names)}) "
                    f"VALUES ({', '.join('?' for _ in names)})",
                    tuple(row[n] for n in names),
                )
        except sqlite3.IntegrityError as exc:
            raise ConnectorError(
                f"record '{payload.key_value}' already exists",
                resource=self.resource,
                code=ErrorCode.CONFLICT.value,
            ) from exc
        except sqlite3.OperationalError as exc:
            raise ConnectorError(f"database error: {exc}", resource=self.resource, retryable="locked" in str(exc)) from exc
        return payload.key_value

    def update(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        table = self._table(kind)
        key_column = self._key_column(kind, payload)
        row = {name: self.separator.join(values) for name, values in payload.attrs.items() if name != key_column}
        self._ensure_table(table, key_column, list(row))
        if not row:
            with self._lock:
                found = self._run(
                    f"SELECT 1 FROM {_quote(table)} WHERE {_quote(key_column)} = ?", (payload.key_value,)
                ).fetchone()
            if found is None:
                raise ObjectNotFoundError(self.resource, payload.key_value)
            return payload.key_value
        assignments = ", ".join(f"{_quote(n)} = ?" for n in row)
        cur = self._run(
            f"UPDATE {_quote(table)} SET {assignments} WHERE {_quote(key_column)} = ?",
            (*row.values(), payload.key_value),
        )
        if cur.rowcount == 0:
            raise ObjectNotFoundError(self.resource, payload.key_value)
        return payload.key_value

    def delete(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> None:
        table = self._table(kind)
        if not self._columns(table):
            raise ObjectNotFoundError(self.resource, payload.key_value)
        key_column = self._key_column(kind, payload)
        cur = self._run(f"DELETE FROM {_quote(table)} WHERE {_quote(key_column)} = ?", (payload.key_value,))
        if cur.rowcount == 0:
            raise ObjectNotFoundError(self.resource, payload.key_value)


register(PluginKind.CONNECTOR, "db", DbConnector)
