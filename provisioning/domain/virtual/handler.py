from __future__ import annotations

import logging
from typing import Callable, Mapping, Sequence

from provisioning.domain.exceptions import ConnectorError, MappingError, ObjectNotFoundError, ValidationError
from provisioning.domain.mapping.resolver import MappingResolver
from provisioning.domain.models import AnyEntity, ExternalResource, Provision, VirSchema
from provisioning.domain.ports.connector_gateway import ConnectorGatewayProtocol, read_connector_object
from provisioning.domain.ports.repositories import ResourceRepositoryProtocol
from provisioning.domain.propagation_models import PropagationStatus
from provisioning.domain.virtual.cache import VirAttrCache, VirAttrCacheKey
from provisioning.infra.logging.setup import getComponentLogger, logEvent

ResourceSelector = Callable[[AnyEntity], list[str]]
# (entity, resource, schema, values, run_id) -> статус пропагации на один ресурс
SinglePropagator = Callable[[AnyEntity, str, str, list[str], str | None], PropagationStatus]


class VirAttrHandler:
    """
    Назначение/ответственность:
        Чтение и запись виртуальных атрибутов через кэш.

    Контракт:
        - Привязка схемы: первый ресурс сущности (в порядке выбора ресурсов),
          чей provision маппит схему.
        - Ошибка загрузки (нет записи, коннектор недоступен, нет ключа)
          даёт пустой список и не кэшируется.
        - Запись: write-through на каждый привязанный ресурс; кэш
          перезаписывается только после успешной пропагации.
    """

    def __init__(
        self,
        resource_repo: ResourceRepositoryProtocol,
        gateway: ConnectorGatewayProtocol,
        resolver: MappingResolver,
        cache: VirAttrCache,
        resource_selector: ResourceSelector,
        propagator: SinglePropagator | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource_repo = resource_repo
        self.gateway = gateway
        self.resolver = resolver
        self.cache = cache
        self.resource_selector = resource_selector
        self.propagator = propagator
        self.logger = logger or getComponentLogger("virattr")

    def schema_for(self, entity: AnyEntity, schema: str) -> VirSchema:
        vir_schema = self.resource_repo.catalog().vir_schema(entity.kind, schema)
        if vir_schema is None:
            raise ValidationError(
                f"unknown virtual schema '{schema}' for {entity.kind.value}",
                field="schema",
            )
        return vir_schema

    def bindings(self, entity: AnyEntity, schema: str) -> list[tuple[ExternalResource, Provision]]:
        bound: list[tuple[ExternalResource, Provision]] = []
        for resource_key in self.resource_selector(entity):
            resource = self.resource_repo.get_resource(resource_key)
            if resource is None:
                continue
            provision = resource.provision_for(entity.kind)
            if provision is not None and provision.virtual_items(schema):
                bound.append((resource, provision))
        return bound

    def read(self, entity: AnyEntity, schema: str, run_id: str | None = None) -> list[str]:
        """
        Назначение:
            Значения виртуального атрибута: из кэша или с ресурса при промахе.
        """
        self.schema_for(entity, schema)
        bound = self.bindings(entity, schema)
        if not bound:
            return []
        resource, provision = bound[0]
        key = VirAttrCacheKey(entity.key, schema, resource.key)
        try:
            return self.cache.get_or_load(key, lambda: self._fetch(entity, resource, provision, schema))
        except (ConnectorError, ObjectNotFoundError, MappingError) as exc:
            logEvent(
                self.logger,
                logging.WARNING,
                run_id,
                "virattr",
                f"read failed entity={entity.key} schema={schema} resource={resource.key} code={exc.code}: {exc}",
            )
            return []

    def cached(self, entity: AnyEntity, schema: str) -> list[str] | None:
        """
        Значения из кэша без обращения к ресурсу; None при промахе.
        Используется при исходящем маппинге.
        """
        bound = self.bindings(entity, schema)
        if not bound:
            return None
        value = self.cache.get(VirAttrCacheKey(entity.key, schema, bound[0][0].key))
        return list(value.values) if value is not None else None

    def write(
        self,
        entity: AnyEntity,
        schema: str,
        values: Sequence[str],
        run_id: str | None = None,
    ) -> list[PropagationStatus]:
        """
        Назначение:
            Write-through нового значения на все привязанные ресурсы.

        Ошибки/исключения:
            ValidationError: неизвестная схема или схема только для чтения.
        """
        vir_schema = self.schema_for(entity, schema)
        if vir_schema.read_only:
            raise ValidationError(f"virtual schema '{schema}' is read-only", field="schema")
        if self.propagator is None:
            raise ValidationError("virtual attribute writes are not configured", field="propagator")

        new_values = list(values)
        statuses: list[PropagationStatus] = []
        for resource, _ in self.bindings(entity, schema):
            key = VirAttrCacheKey(entity.key, schema, resource.key)
            status = self.cache.write_through(
                key,
                new_values,
                lambda resource_key=resource.key: self.propagator(entity, resource_key, schema, new_values, run_id),
            )
            statuses.append(status)
        logEvent(
            self.logger,
            logging.INFO,
            run_id,
            "virattr",
            f"write entity={entity.key} schema={schema} resources={len(statuses)} "
            f"ok={sum(1 for s in statuses if s.ok)}",
        )
        return statuses

    def remember(
        self,
        entity: AnyEntity,
        statuses: Sequence[PropagationStatus],
        vir_values: Mapping[str, list[str]],
    ) -> None:
        """
        Назначение:
            После мутации с виртуальными значениями кэширует их для ресурсов,
            где пропагация прошла успешно и схема замаплена.
        """
        for status in statuses:
            if not status.ok:
                continue
            resource = self.resource_repo.get_resource(status.resource)
            provision = resource.provision_for(entity.kind) if resource is not None else None
            if provision is None:
                continue
            for schema, values in vir_values.items():
                if provision.virtual_items(schema):
                    self.cache.put(VirAttrCacheKey(entity.key, schema, status.resource), values)

    def refresh_from_record(self, entity_key: str, resource: str, vir_values: Mapping[str, list[str]]) -> None:
        """Обновляет кэш значениями, пришедшими во внешней записи при pull."""
        for schema, values in vir_values.items():
            self.cache.put(VirAttrCacheKey(entity_key, schema, resource), values)

    def _fetch(self, entity: AnyEntity, resource: ExternalResource, provision: Provision, schema: str) -> list[str]:
        key_attr, key_value = self.resolver.conn_object_key_value(entity, resource)
        obj = read_connector_object(self.gateway, resource.key, entity.kind, key_attr, key_value)
        if obj is None:
            raise ObjectNotFoundError(resource.key, key_value)
        return obj.values(provision.virtual_items(schema)[0].ext_attr_name)
