from __future__ import annotations

import threading
import time
from typing import Iterator, Mapping

from provisioning.config import Settings
from provisioning.domain.exceptions import ConnectorError, ObjectNotFoundError
from provisioning.domain.models import (
    AnyEntity,
    AnyTypeKind,
    AttrCategory,
    ConnectorConf,
    ConnectorObject,
    ConnObjectPayload,
    DerSchema,
    ExternalResource,
    MappingItem,
    Provision,
    VirSchema,
)
from provisioning.domain.ports.connector_gateway import ConnectorPage
from provisioning.wiring import App, build_app

USER = AnyTypeKind.USER
GROUP = AnyTypeKind.GROUP


class DummyGateway:
    """
    Шлюз в памяти: ресурс -> {ключ записи -> атрибуты}.
    failures/delays задаются по ресурсу; calls фиксирует каждое обращение.
    """

    def __init__(self, page_size: int = 2):
        self.page_size = page_size
        self.records: dict[str, dict[str, dict[str, list[str]]]] = {}
        self.deleted: dict[str, set[str]] = {}
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[tuple[str, str, str | None]] = []
        self._lock = threading.Lock()

    def seed(self, resource: str, key_attr: str, *records: Mapping[str, object], deleted: tuple[str, ...] = ()) -> None:
        store = self.records.setdefault(resource, {})
        for record in records:
            attrs = {name: list(v) if isinstance(v, (list, tuple)) else [str(v)] for name, v in record.items()}
            store[attrs[key_attr][0]] = attrs
        self.deleted.setdefault(resource, set()).update(deleted)

    def calls_for(self, op: str, resource: str | None = None) -> list[tuple[str, str, str | None]]:
        return [c for c in self.calls if c[0] == op and (resource is None or c[1] == resource)]

    def _enter(self, op: str, resource: str, key: str | None) -> None:
        with self._lock:
            self.calls.append((op, resource, key))
        delay = self.delays.get(resource)
        if delay:
            time.sleep(delay)
        failure = self.failures.get(resource)
        if failure is not None:
            raise failure

    def search(self, resource: str, kind: AnyTypeKind, filter: Mapping[str, str] | None = None) -> Iterator[ConnectorPage]:
        self._enter("search", resource, None)
        with self._lock:
            objects = [
                ConnectorObject(
                    uid=key,
                    attrs={name: list(values) for name, values in attrs.items()},
                    deleted=key in self.deleted.get(resource, set()),
                )
                for key, attrs in sorted(self.records.get(resource, {}).items())
                if all(str(value) in attrs.get(name, []) for name, value in (filter or {}).items())
            ]
        for index in range(0, len(objects), self.page_size):
            yield ConnectorPage(page=index // self.page_size + 1, objects=objects[index:index + self.page_size])

    def create(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        self._enter("create", resource, payload.key_value)
        with self._lock:
            store = self.records.setdefault(resource, {})
            if payload.key_value in store:
                raise ConnectorError(f"duplicate {payload.key_value}", resource=resource, code="CONFLICT")
            store[payload.key_value] = {name: list(values) for name, values in payload.attrs.items()}
        return payload.key_value

    def update(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> str:
        self._enter("update", resource, payload.key_value)
        with self._lock:
            store = self.records.setdefault(resource, {})
            if payload.key_value not in store:
                raise ObjectNotFoundError(resource, payload.key_value)
            store[payload.key_value].update({name: list(values) for name, values in payload.attrs.items()})
        return payload.key_value

    def delete(self, resource: str, kind: AnyTypeKind, payload: ConnObjectPayload) -> None:
        self._enter("delete", resource, payload.key_value)
        with self._lock:
            store = self.records.setdefault(resource, {})
            if payload.key_value not in store:
                raise ObjectNotFoundError(resource, payload.key_value)
            del store[payload.key_value]


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "data_dir": str(tmp_path / "data"),
        "log_dir": str(tmp_path / "logs"),
        "report_dir": str(tmp_path / "reports"),
        "worker_pool_size": 2,
        "propagation_pool_size": 4,
        "propagation_timeout_seconds": 5.0,
        "connector_retries": 0,
        "retry_backoff_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_app(tmp_path, gateway: DummyGateway, **overrides) -> App:
    return build_app(make_settings(tmp_path, **overrides), db_path=":memory:", gateway=gateway)


def seed_schemas(app: App) -> None:
    for name in ("firstname", "surname", "email", "department"):
        app.resources.save_plain_schema(USER, name)
    app.resources.save_der_schema(DerSchema("fullname", USER, "{firstname} {surname}"))
    app.resources.save_vir_schema(VirSchema("virtualdata", USER))
    app.resources.save_vir_schema(VirSchema("badge", USER, read_only=True))


def user_provision(*, virtual: bool = True, mandatory_email: bool = False) -> Provision:
    items = [
        MappingItem("name", AttrCategory.FIELD, "username", conn_object_key=True),
        MappingItem("firstname", AttrCategory.PLAIN, "givenName"),
        MappingItem("surname", AttrCategory.PLAIN, "sn"),
        MappingItem("email", AttrCategory.PLAIN, "mail", mandatory=mandatory_email),
        MappingItem("fullname", AttrCategory.DERIVED, "cn"),
    ]
    if virtual:
        items.append(MappingItem("virtualdata", AttrCategory.VIRTUAL, "email"))
    return Provision(USER, items)


def group_provision() -> Provision:
    return Provision(GROUP, [MappingItem("name", AttrCategory.FIELD, "cn", conn_object_key=True)])


def make_resource(key: str, *provisions: Provision) -> ExternalResource:
    return ExternalResource(
        key=key,
        connector=ConnectorConf("memory", {}),
        provisions=list(provisions) or [user_provision(), group_provision()],
    )


def add_resources(app: App, *keys: str, **provisions: Provision) -> None:
    for key in keys:
        provision = provisions.get(key)
        if provision is None:
            app.resources.save_resource(make_resource(key))
        else:
            app.resources.save_resource(make_resource(key, provision))


def make_user(
    key: str = "u1",
    name: str = "jdoe",
    *,
    resources: tuple[str, ...] = ("R1",),
    memberships: tuple[str, ...] = (),
    realm: str = "/",
    vir_attrs: tuple[str, ...] = (),
    **plain: str,
) -> AnyEntity:
    attrs = {"firstname": ["John"], "surname": ["Doe"], "email": [f"{name}@x.com"]}
    attrs.update({attr: [value] for attr, value in plain.items()})
    return AnyEntity(
        key=key,
        kind=USER,
        name=name,
        realm=realm,
        plain_attrs=attrs,
        vir_attrs=list(vir_attrs),
        resources=list(resources),
        memberships=list(memberships),
    )
