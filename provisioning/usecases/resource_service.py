from __future__ import annotations

import logging

from provisioning.domain.exceptions import NotFoundError, ValidationError
from provisioning.domain.mapping.derived import referenced_attrs
from provisioning.domain.mapping.validation import validate_resource
from provisioning.domain.models import AnyTypeKind, AttrCategory, DerSchema, ExternalResource, VirSchema
from provisioning.domain.ports.repositories import ResourceRepositoryProtocol
from provisioning.domain.virtual.cache import VirAttrCache
from provisioning.infra.logging.setup import getComponentLogger, logEvent


class ResourceService:
    """
    Назначение/ответственность:
        Конфигурация ресурсов и схем. Изменения, влияющие на привязку
        виртуальных атрибутов, инвалидируют кэш.
    """

    def __init__(
        self,
        resource_repo: ResourceRepositoryProtocol,
        cache: VirAttrCache,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource_repo = resource_repo
        self.cache = cache
        self.logger = logger or getComponentLogger("resources")

    def save_resource(self, resource: ExternalResource) -> ExternalResource:
        validate_resource(resource, self.resource_repo.catalog())
        existed = self.resource_repo.get_resource(resource.key) is not None
        self.resource_repo.save_resource(resource)
        removed = self.cache.invalidate_resource(resource.key) if existed else 0
        logEvent(
            self.logger,
            logging.INFO,
            None,
            "resources",
            f"resource saved key={resource.key} connector={resource.connector.type} cache_invalidated={removed}",
        )
        return resource

    def delete_resource(self, key: str) -> None:
        if not self.resource_repo.delete_resource(key):
            raise NotFoundError("resource", key)
        self.cache.invalidate_resource(key)
        logEvent(self.logger, logging.INFO, None, "resources", f"resource deleted key={key}")

    def read_resource(self, key: str) -> ExternalResource:
        resource = self.resource_repo.get_resource(key)
        if resource is None:
            raise NotFoundError("resource", key)
        return resource

    def list_resources(self) -> list[ExternalResource]:
        return self.resource_repo.list_resources()

    def save_plain_schema(self, kind: AnyTypeKind, name: str) -> None:
        self.resource_repo.save_plain_schema(kind, name)

    def save_der_schema(self, schema: DerSchema) -> None:
        """
        Ошибки/исключения:
            ValidationError: шаблон ссылается на незарегистрированный plain-атрибут.
        """
        catalog = self.resource_repo.catalog()
        names = referenced_attrs(schema.expression)
        if not names:
            raise ValidationError(f"derived schema '{schema.name}' references no attributes", field="expression")
        for name in names:
            if not catalog.has_plain(schema.kind, name):
                raise ValidationError(
                    f"derived schema '{schema.name}' references unknown attribute '{name}'",
                    field="expression",
                )
        self.resource_repo.save_der_schema(schema)

    def save_vir_schema(self, schema: VirSchema) -> VirSchema:
        self.resource_repo.save_vir_schema(schema)
        self.cache.invalidate_schema(schema.name)
        return schema

    def list_vir_schemas(self, kind: AnyTypeKind | None = None) -> list[VirSchema]:
        catalog = self.resource_repo.catalog()
        kinds = [kind] if kind is not None else list(AnyTypeKind)
        return [
            schema
            for k in kinds
            for schema in sorted(catalog.virtual.get(k, {}).values(), key=lambda s: s.name)
        ]

    def delete_vir_schema(self, kind: AnyTypeKind, name: str) -> int:
        """
        Назначение:
            Удаляет виртуальную схему вместе с элементами маппинга, которые на неё ссылаются.
        Выходные данные:
            Число удалённых элементов маппинга.
        """
        if self.resource_repo.catalog().vir_schema(kind, name) is None:
            raise NotFoundError("virtual schema", f"{kind.value}:{name}")

        removed_items = 0
        for resource in self.resource_repo.list_resources():
            changed = False
            for provision in resource.provisions:
                if provision.kind != kind:
                    continue
                kept = [
                    item
                    for item in provision.items
                    if not (item.category == AttrCategory.VIRTUAL and item.int_attr_name == name)
                ]
                if len(kept) != len(provision.items):
                    removed_items += len(provision.items) - len(kept)
                    provision.items = kept
                    changed = True
            if changed:
                self.resource_repo.save_resource(resource)

        self.resource_repo.delete_vir_schema(kind, name)
        self.cache.invalidate_schema(name)
        logEvent(
            self.logger,
            logging.INFO,
            None,
            "resources",
            f"virtual schema deleted kind={kind.value} name={name} mapping_items_removed={removed_items}",
        )
        return removed_items
