from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping


class AnyTypeKind(str, Enum):
    """
    Назначение:
        Вид управляемой сущности.
    """

    USER = "USER"
    GROUP = "GROUP"
    ANY_OBJECT = "ANY_OBJECT"


class AttrCategory(str, Enum):
    """
    Назначение:
        Категория внутреннего атрибута в элементе маппинга.
        FIELD: встроенные поля сущности (key, name, realm).
    """

    PLAIN = "PLAIN"
    DERIVED = "DERIVED"
    VIRTUAL = "VIRTUAL"
    FIELD = "FIELD"


class MappingPurpose(str, Enum):
    PROPAGATION = "PROPAGATION"
    SYNCHRONIZATION = "SYNCHRONIZATION"
    BOTH = "BOTH"
    NONE = "NONE"

    def allows(self, direction: "MappingDirection") -> bool:
        if self == MappingPurpose.BOTH:
            return True
        if direction == MappingDirection.OUTBOUND:
            return self == MappingPurpose.PROPAGATION
        return self == MappingPurpose.SYNCHRONIZATION


class MappingDirection(str, Enum):
    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"


ENTITY_FIELDS: tuple[str, ...] = ("key", "name", "realm")


@dataclass
class AnyEntity:
    """
    Назначение:
        Управляемая сущность (пользователь, группа, any-object).
    Инварианты/гарантии:
        - plain_attrs: имя -> упорядоченный список значений.
        - vir_attrs содержит только имена схем; значения виртуальных
          атрибутов в хранилище не сохраняются.
        - resources и memberships упорядочены, без дублей.
    """

    key: str
    kind: AnyTypeKind
    name: str
    realm: str = "/"
    plain_attrs: dict[str, list[str]] = field(default_factory=dict)
    der_attrs: list[str] = field(default_factory=list)
    vir_attrs: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    memberships: list[str] = field(default_factory=list)

    def field_value(self, name: str) -> list[str]:
        value = getattr(self, name, None) if name in ENTITY_FIELDS else None
        if value is None or value == "":
            return []
        return [str(value)]

    def plain_values(self, name: str) -> list[str]:
        return list(self.plain_attrs.get(name, []))

    def assign_resource(self, resource: str) -> bool:
        if resource in self.resources:
            return False
        self.resources.append(resource)
        return True

    def copy(self) -> "AnyEntity":
        return replace(
            self,
            plain_attrs={k: list(v) for k, v in self.plain_attrs.items()},
            der_attrs=list(self.der_attrs),
            vir_attrs=list(self.vir_attrs),
            resources=list(self.resources),
            memberships=list(self.memberships),
        )

    def in_realm(self, realm: str) -> bool:
        if realm in ("", "/"):
            return True
        base = realm.rstrip("/")
        return self.realm == base or self.realm.startswith(base + "/")


@dataclass(frozen=True)
class DerSchema:
    """
    Назначение:
        Производный атрибут: шаблон над plain-атрибутами, например "{firstname}.{surname}".
    """

    name: str
    kind: AnyTypeKind
    expression: str


@dataclass(frozen=True)
class VirSchema:
    """
    Назначение:
        Виртуальный атрибут. Привязка к ресурсу/внешнему атрибуту задаётся
        маппингом ресурса (элемент категории VIRTUAL с int_attr_name == name).
    """

    name: str
    kind: AnyTypeKind
    read_only: bool = False


@dataclass(frozen=True)
class MappingItem:
    int_attr_name: str
    category: AttrCategory
    ext_attr_name: str
    purpose: MappingPurpose = MappingPurpose.BOTH
    conn_object_key: bool = False
    mandatory: bool = False


@dataclass
class Provision:
    """
    Назначение:
        Настройка ресурса для одного вида сущностей: маппинг атрибутов.
    """

    kind: AnyTypeKind
    items: list[MappingItem] = field(default_factory=list)

    def key_items(self) -> list[MappingItem]:
        return [item for item in self.items if item.conn_object_key]

    def key_item(self) -> MappingItem | None:
        keys = self.key_items()
        return keys[0] if len(keys) == 1 else None

    def items_for(self, direction: MappingDirection) -> list[MappingItem]:
        return [item for item in self.items if item.purpose.allows(direction)]

    def virtual_items(self, schema: str) -> list[MappingItem]:
        return [
            item
            for item in self.items
            if item.category == AttrCategory.VIRTUAL and item.int_attr_name == schema
        ]


@dataclass(frozen=True)
class ConnectorConf:
    """
    Назначение:
        Конфигурация коннектора ресурса: тип (id в реестре CONNECTOR) и свойства.
    """

    type: str
    properties: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class ExternalResource:
    key: str
    connector: ConnectorConf
    provisions: list[Provision] = field(default_factory=list)
    description: str = ""

    def provision_for(self, kind: AnyTypeKind) -> Provision | None:
        for provision in self.provisions:
            if provision.kind == kind:
                return provision
        return None


@dataclass
class SchemaCatalog:
    """
    Назначение:
        Справочник схем атрибутов по видам сущностей.
        Используется для проверки ссылок маппинга и для вычисления derived.
    """

    plain: dict[AnyTypeKind, set[str]] = field(default_factory=dict)
    derived: dict[AnyTypeKind, dict[str, DerSchema]] = field(default_factory=dict)
    virtual: dict[AnyTypeKind, dict[str, VirSchema]] = field(default_factory=dict)

    def has_plain(self, kind: AnyTypeKind, name: str) -> bool:
        return name in self.plain.get(kind, set())

    def der_schema(self, kind: AnyTypeKind, name: str) -> DerSchema | None:
        return self.derived.get(kind, {}).get(name)

    def vir_schema(self, kind: AnyTypeKind, name: str) -> VirSchema | None:
        return self.virtual.get(kind, {}).get(name)

    def add_plain(self, kind: AnyTypeKind, *names: str) -> None:
        self.plain.setdefault(kind, set()).update(names)

    def add_derived(self, schema: DerSchema) -> None:
        self.derived.setdefault(schema.kind, {})[schema.name] = schema

    def add_virtual(self, schema: VirSchema) -> None:
        self.virtual.setdefault(schema.kind, {})[schema.name] = schema


@dataclass(frozen=True)
class ConnectorObject:
    """
    Назначение:
        Внешняя запись, прочитанная коннектором.
    Поля:
        uid: внешний идентификатор записи.
        attrs: внешнее имя атрибута -> упорядоченный список значений.
        deleted: запись помечена источником как удалённая.
    """

    uid: str
    attrs: Mapping[str, list[str]]
    deleted: bool = False

    def values(self, name: str) -> list[str]:
        return list(self.attrs.get(name, []))


@dataclass(frozen=True)
class ConnObjectPayload:
    """
    Назначение:
        Результат исходящего маппинга для пары (сущность, ресурс).
    """

    key_attr: str
    key_value: str
    attrs: dict[str, list[str]]
