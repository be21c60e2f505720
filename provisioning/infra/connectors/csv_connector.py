from __future__ import annotations

import csv
import threading
from pathlib import Path
from typing import Any, Mapping

from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import ConnectorError, ObjectNotFoundError
from provisioning.domain.models import AnyTypeKind, ConnectorObject, ConnObjectPayload
from provisioning.domain.plugins.registry import PluginKind, register
from provisioning.infra.connectors.base import (
    ConnectorSettings,
    is_truthy,
    matches_filter,
    property_for_kind,
    to_values,
)

_file_locks: dict[str, threading.Lock] = {}
_file_locks_guard = threading.Lock()


def _lock_for(path: str) -> threading.Lock:
    with _file_locks_guard:
        return _file_locks.setdefault(str(Path(path).resolve()), threading.Lock())


class CsvConnector:
    """
    Назначение/ответственность:
        Ресурс в виде плоского CSV-файла (одна строка: одна запись).

    Свойства ресурса:
        path (строка или {KIND: path}), key_column, deleted_column (необязательно),
        delimiter (по умолчанию ";"), multi_value_separator (по умолчанию "|").
    """

    def __init__(self, resource: str, properties: Mapping[str, Any], settings: ConnectorSettings | None = None):
        self.resource = resource
        self.properties = dict(properties)
        self.delimiter = str(properties.get("delimiter") or ";")
        self.separator = str(properties.get("multi_value_separator") or "|")
        self.deleted_column = properties.get("deleted_column")

    def close(self) -> None:
        return None

    def _path(self, kind: AnyTypeKind) -> str:
        path = property_for_kind(self.properties, "path", kind)
        if not path:
            raise ConnectorError(
                f"no CSV path configured for {kind.value}",
                resource=self.resource,
                code=ErrorCode.VALIDATION_ERROR.value,
            )
        return str(path)

    def _key_column(self, kind: AnyTypeKind, payload: ConnObjectPayload | None = None) -> str:
        column = property_for_kind(self.properties, "key_column", kind)
        if column:
            return str(column)
        if payload is not None:
            return payload.key_attr
        raise ConnectorError(
            "CSV connector requires 'key_column'",
            resource=self.resource,
            code=ErrorCode.VALIDATION_ERROR.value,
        )

    def _read(self, path: str) -> tuple[list[str], list[dict[str, str]]]:
        if not Path(path).exists():
            return [], []
        try:
            with open(path, "r", encoding="utf-8-sig", newline="") as f:
                reader = csv.DictReader(f, delimiter=self.delimiter)
                rows = [dict(row) for row in reader]
                return list(reader.fieldnames or []), rows
        except OSError as exc:
            raise ConnectorError(f"cannot read {path}: {exc}", resource=self.resource, retryable=True) from exc

    def _write(self, path: str, header: list[str], rows: list[dict[str, str]]) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        tmp = Path(f"{path}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=header, delimiter=self.delimiter, extrasaction="ignore")
                writer.writeheader()
                for row in rows:
                    writer.writerow(row)
            tmp.replace(path)
        except OSError as exc:
            raise ConnectorError(f"cannot write {path}: {exc}", resource=self.resource, retryable=True) from exc

    def _to_object(self, row: Mapping[str, str], key_column: str) -> ConnectorObject:
        attrs = {
            name: to_values(value, self.separator)
            for name, value in row.items()
            if name is not None and name != self.deleted_column
        }
        deleted = bool(self.deleted_column) and is_truthy(row.get(self.deleted_column) or "")
        return ConnectorObject(uid=row.get(key_column) or "", attrs=attrs, deleted=deleted)

    def read_page(
        self,
        kind: AnyTypeKind,
        filter: Mapping[str, str] | None,
        page: int,
        page_size: int,
    ) -> list[ConnectorObject]:
        key_column = self._key_column(kind)
        _, rows = self._read(self._path(kind))
        objects = [self._to_object(row, key_column) for row in rows]
        selected = [obj for obj in objects if matches_filter(obj.attrs, filter)]
        start = (page - 1) * page_size
        return selected[start:start + page_size]

    def _row(self, payload: ConnObjectPayload) -> dict[str, str]:
        return {name: self.separator.join(values) for name, values in payload.attrs.items()}

    def create(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        path = self._path(kind)
        key_column = self._key_column(kind, payload)
        with _lock_for(path):
            header, rows = self._read(path)
            if any(row.get(key_column) == payload.key_value for row in rows):
                raise ConnectorError(
                    f"record '{payload.key_value}' already exists",
                    resource=self.resource,
                    code=ErrorCode.CONFLICT.value,
                )
            new_row = self._row(payload)
            for name in new_row:
                if name not in header:
                    header.append(name)
            rows.append(new_row)
            self._write(path, header, rows)
        return payload.key_value

    def update(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        path = self._path(kind)
        key_column = self._key_column(kind, payload)
        with _lock_for(path):
            header, rows = self._read(path)
            for row in rows:
                if row.get(key_column) == payload.key_value:
                    row.update(self._row(payload))
                    for name in payload.attrs:
                        if name not in header:
                            header.append(name)
                    self._write(path, header, rows)
                    return payload.key_value
        raise ObjectNotFoundError(self.resource, payload.key_value)

    def delete(self, kind: AnyTypeKind, payload: ConnObjectPayload) -> None:
        path = self._path(kind)
        key_column = self._key_column(kind, payload)
        with _lock_for(path):
            header, rows = self._read(path)
            remaining = [row for row in rows if row.get(key_column) != payload.key_value]
            if len(remaining) == len(rows):
                raise ObjectNotFoundError(self.resource, payload.key_value)
            self._write(path, header, remaining)


register(PluginKind.CONNECTOR, "csv", CsvConnector)
