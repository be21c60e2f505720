from __future__ import annotations

from typing import Any, Mapping, Protocol

from provisioning.domain.exceptions import ValidationError
from provisioning.domain.mapping.derived import render_derived
from provisioning.domain.mapping.resolver import InboundAttributes
from provisioning.domain.models import AnyEntity, AnyTypeKind, AttrCategory, MappingItem, SchemaCatalog
from provisioning.domain.plugins.registry import PluginKind, register
from provisioning.domain.ports.entity_store import EntityStoreProtocol


class CorrelationRule(Protocol):
    """
    Назначение:
        Подключаемое правило поиска внутренних кандидатов для внешней записи.
    Контракт:
        Возвращает всех найденных кандидатов; решение о неоднозначности
        принимает движок сопоставления.
    """

    def candidates(
        self,
        kind: AnyTypeKind,
        inbound: InboundAttributes,
        store: EntityStoreProtocol,
    ) -> list[AnyEntity]: ...


class KeyItemCorrelation:
    """
    Назначение:
        Корреляция по умолчанию: обратный поиск по connObjectKey provision.
        FIELD/PLAIN ищутся в хранилище по атрибуту, DERIVED вычисляется
        для каждой сущности вида.
    """

    def __init__(self, key_item: MappingItem, catalog: SchemaCatalog) -> None:
        self.key_item = key_item
        self.catalog = catalog

    def candidates(
        self,
        kind: AnyTypeKind,
        inbound: InboundAttributes,
        store: EntityStoreProtocol,
    ) -> list[AnyEntity]:
        value = inbound.conn_object_key
        if not value:
            return []
        item = self.key_item
        if item.category in (AttrCategory.FIELD, AttrCategory.PLAIN):
            return list(store.find_by_attr(kind, item.int_attr_name, value))
        if item.category == AttrCategory.DERIVED:
            schema = self.catalog.der_schema(kind, item.int_attr_name)
            if schema is None:
                return []
            return [
                entity
                for entity in store.search(kind)
                if render_derived(schema.expression, entity.plain_attrs)[:1] == [value]
            ]
        return []


@register(PluginKind.CORRELATION_RULE, "plain-attrs")
class PlainAttrsCorrelationRule:
    """
    Назначение:
        Кандидаты, совпадающие со входящей записью по всем перечисленным
        plain-атрибутам (или полям name/realm).

    Конфигурация:
        {"schemas": ["email", "employeeNumber"]}
    """

    def __init__(self, conf: Mapping[str, Any] | None = None) -> None:
        schemas = list((conf or {}).get("schemas") or [])
        if not schemas:
            raise ValidationError("plain-attrs correlation requires 'schemas'", field="correlation_conf.schemas")
        self.schemas = schemas

    def candidates(
        self,
        kind: AnyTypeKind,
        inbound: InboundAttributes,
        store: EntityStoreProtocol,
    ) -> list[AnyEntity]:
        matched: dict[str, AnyEntity] | None = None
        for schema in self.schemas:
            values = inbound.plain_attrs.get(schema)
            if not values and schema in inbound.fields:
                values = [inbound.fields[schema]]
            if not values:
                return []
            found = {entity.key: entity for entity in store.find_by_attr(kind, schema, values[0])}
            if matched is None:
                matched = found
            else:
                matched = {key: entity for key, entity in matched.items() if key in found}
            if not matched:
                return []
        return list((matched or {}).values())
