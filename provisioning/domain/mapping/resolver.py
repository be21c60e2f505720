from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Callable, Mapping

from provisioning.domain.exceptions import MappingError
from provisioning.domain.mapping.derived import render_derived
from provisioning.domain.mapping.validation import validate_provision
from provisioning.domain.models import (
    AnyEntity,
    AnyTypeKind,
    AttrCategory,
    ConnectorObject,
    ConnObjectPayload,
    ExternalResource,
    MappingDirection,
    MappingItem,
    Provision,
    SchemaCatalog,
)

# (entity, schema) -> значения из кэша или None, если их нет
VirtualReader = Callable[[AnyEntity, str], list[str] | None]


@dataclass
class InboundAttributes:
    """
    Назначение:
        Результат входящего маппинга внешней записи.
    Поля:
        fields: встроенные поля сущности (name, realm, key).
        plain_attrs: plain-атрибуты в порядке значений источника.
        vir_values: значения виртуальных атрибутов по имени схемы (в хранилище не пишутся).
        conn_object_key: значение connObjectKey записи.
    """

    conn_object_key: str | None
    fields: dict[str, str] = field(default_factory=dict)
    plain_attrs: dict[str, list[str]] = field(default_factory=dict)
    vir_values: dict[str, list[str]] = field(default_factory=dict)


class MappingResolver:
    """
    Назначение/ответственность:
        Чистое преобразование сущность <-> внешняя запись по маппингу ресурса.
        Побочных эффектов нет, кроме чтения виртуальных атрибутов через кэш.
    """

    def __init__(
        self,
        catalog_provider: Callable[[], SchemaCatalog],
        virtual_reader: VirtualReader | None = None,
    ) -> None:
        self.catalog_provider = catalog_provider
        self.virtual_reader = virtual_reader

    def bind_virtual_reader(self, reader: VirtualReader | None) -> None:
        self.virtual_reader = reader

    def provision_of(self, entity_kind: AnyTypeKind, resource: ExternalResource) -> Provision:
        provision = resource.provision_for(entity_kind)
        if provision is None:
            raise MappingError(
                f"resource '{resource.key}' has no provision for {entity_kind.value}",
                resource=resource.key,
            )
        return provision

    def resolve_outbound(
        self,
        entity: AnyEntity,
        resource: ExternalResource,
        vir_values: Mapping[str, list[str]] | None = None,
    ) -> ConnObjectPayload:
        """
        Назначение:
            Собирает внешнее представление сущности для ресурса.

        Контракт:
            - Элементы с purpose PROPAGATION/BOTH, порядок значений сохраняется.
            - Виртуальные значения: сначала vir_values текущей мутации, затем
              закэшированные значения схем, назначенных сущности (без
              обращения к ресурсу); незакэшированные атрибуты не передаются.
            - Ключевое значение обязательно непустое.

        Ошибки/исключения:
            MappingError: ошибки маппинга или пустой обязательный атрибут.
        """
        provision = self.provision_of(entity.kind, resource)
        catalog = self.catalog_provider()
        validate_provision(provision, catalog, resource=resource.key)

        key_item = provision.key_item()
        attrs: dict[str, list[str]] = {}
        for item in provision.items_for(MappingDirection.OUTBOUND):
            if item.category == AttrCategory.VIRTUAL:
                values = self._virtual_values(entity, item, vir_values)
                if values is None:
                    continue
            else:
                values = self._values(entity, item, catalog)
            if item.mandatory and not values:
                raise MappingError(
                    f"mandatory attribute '{item.int_attr_name}' is empty",
                    resource=resource.key,
                    attribute=item.ext_attr_name,
                )
            attrs[item.ext_attr_name] = values

        key_values = self._values(entity, key_item, catalog)
        if not key_values:
            raise MappingError(
                f"connObjectKey '{key_item.int_attr_name}' has no value for '{entity.key}'",
                resource=resource.key,
                attribute=key_item.int_attr_name,
            )
        attrs.setdefault(key_item.ext_attr_name, key_values)
        return ConnObjectPayload(key_attr=key_item.ext_attr_name, key_value=key_values[0], attrs=attrs)

    def conn_object_key_value(self, entity: AnyEntity, resource: ExternalResource) -> tuple[str, str]:
        """
        Возвращает (внешнее имя ключевого атрибута, значение ключа) без
        разрешения прочих атрибутов.
        """
        provision = self.provision_of(entity.kind, resource)
        catalog = self.catalog_provider()
        validate_provision(provision, catalog, resource=resource.key)
        key_item = provision.key_item()
        values = self._values(entity, key_item, catalog)
        if not values:
            raise MappingError(
                f"connObjectKey '{key_item.int_attr_name}' has no value for '{entity.key}'",
                resource=resource.key,
                attribute=key_item.int_attr_name,
            )
        return key_item.ext_attr_name, values[0]

    def resolve_inbound(self, record: ConnectorObject, provision: Provision) -> InboundAttributes:
        """
        Назначение:
            Переводит внешнюю запись во внутренние атрибуты (purpose SYNCHRONIZATION/BOTH).
            Производные атрибуты вычисляются, а не принимаются извне.
        """
        catalog = self.catalog_provider()
        validate_provision(provision, catalog)
        key_item = provision.key_item()
        key_values = record.values(key_item.ext_attr_name)
        inbound = InboundAttributes(conn_object_key=key_values[0] if key_values else record.uid)

        for item in provision.items_for(MappingDirection.INBOUND):
            if item.category == AttrCategory.DERIVED:
                continue
            if item.ext_attr_name not in record.attrs:
                continue
            values = record.values(item.ext_attr_name)
            if item.category == AttrCategory.FIELD:
                if values:
                    inbound.fields[item.int_attr_name] = values[0]
            elif item.category == AttrCategory.PLAIN:
                inbound.plain_attrs[item.int_attr_name] = values
            else:
                inbound.vir_values[item.int_attr_name] = values
        return inbound

    def _values(self, entity: AnyEntity, item: MappingItem, catalog: SchemaCatalog) -> list[str]:
        if item.category == AttrCategory.FIELD:
            return entity.field_value(item.int_attr_name)
        if item.category == AttrCategory.PLAIN:
            return entity.plain_values(item.int_attr_name)
        if item.category == AttrCategory.DERIVED:
            schema = catalog.der_schema(entity.kind, item.int_attr_name)
            if schema is None:
                raise MappingError(
                    f"unknown derived attribute '{item.int_attr_name}'",
                    attribute=item.int_attr_name,
                )
            return render_derived(schema.expression, entity.plain_attrs)
        raise MappingError(
            f"virtual attribute '{item.int_attr_name}' cannot be resolved here",
            attribute=item.int_attr_name,
        )

    def _virtual_values(
        self,
        entity: AnyEntity,
        item: MappingItem,
        vir_values: Mapping[str, list[str]] | None,
    ) -> list[str] | None:
        if vir_values and item.int_attr_name in vir_values:
            return list(vir_values[item.int_attr_name])
        if self.virtual_reader is None or item.int_attr_name not in entity.vir_attrs:
            return None
        values = self.virtual_reader(entity, item.int_attr_name)
        return list(values) if values is not None else None


def apply_inbound(entity: AnyEntity, inbound: InboundAttributes) -> bool:
    """
    Назначение:
        Переносит входящие plain-атрибуты и поля (кроме key) в сущность.
    Выходные данные:
        True, если сущность изменилась.
    """
    changed = False
    for name in ("name", "realm"):
        value = inbound.fields.get(name)
        if value and getattr(entity, name) != value:
            setattr(entity, name, value)
            changed = True
    for name, values in inbound.plain_attrs.items():
        if entity.plain_attrs.get(name) != values:
            entity.plain_attrs[name] = list(values)
            changed = True
    for name in inbound.vir_values:
        if name not in entity.vir_attrs:
            entity.vir_attrs.append(name)
            changed = True
    return changed


def merge_inbound(entity: AnyEntity, inbound: InboundAttributes) -> bool:
    """
    Назначение:
        MERGE: объединяет значения plain-атрибутов, сохраняя существующие
        и добавляя новые в конец; поля не перезаписываются.
    """
    changed = False
    for name, values in inbound.plain_attrs.items():
        current = entity.plain_attrs.setdefault(name, [])
        for value in values:
            if value not in current:
                current.append(value)
                changed = True
    for name in inbound.vir_values:
        if name not in entity.vir_attrs:
            entity.vir_attrs.append(name)
            changed = True
    return changed


def new_entity_from(
    kind: AnyTypeKind,
    inbound: InboundAttributes,
    *,
    realm: str,
    resource: str,
) -> AnyEntity:
    """
    Назначение:
        Создаёт новую сущность из внешней записи (PROVISION) и назначает ей ресурс-источник.
    """
    name = inbound.fields.get("name") or inbound.conn_object_key or ""
    if not name:
        raise MappingError("cannot provision entity without a name", resource=resource, attribute="name")
    entity = AnyEntity(
        key=inbound.fields.get("key") or str(uuid.uuid4()),
        kind=kind,
        name=name,
        realm=inbound.fields.get("realm") or realm,
    )
    apply_inbound(entity, inbound)
    entity.assign_resource(resource)
    return entity


__all__ = [
    "InboundAttributes",
    "MappingResolver",
    "apply_inbound",
    "merge_inbound",
    "new_entity_from",
]
