from __future__ import annotations

from provisioning.domain.exceptions import MappingError, ValidationError
from provisioning.domain.models import AttrCategory, ENTITY_FIELDS, ExternalResource, Provision, SchemaCatalog


def validate_provision(provision: Provision, catalog: SchemaCatalog, *, resource: str | None = None) -> None:
    """
    Назначение:
        Проверка маппинга одного provision до сохранения/исполнения.

    Ошибки/исключения:
        - MappingError: нет или несколько connObjectKey; ключ на виртуальном
          атрибуте; ссылка на схему, которой нет в справочнике.
        - ValidationError: пустое внешнее имя атрибута.
    """
    key_items = provision.key_items()
    if not key_items:
        raise MappingError(
            f"no connObjectKey item for {provision.kind.value}",
            resource=resource,
        )
    if len(key_items) > 1:
        raise MappingError(
            f"multiple connObjectKey items for {provision.kind.value}: "
            + ", ".join(item.int_attr_name for item in key_items),
            resource=resource,
        )
    if key_items[0].category == AttrCategory.VIRTUAL:
        raise MappingError(
            "connObjectKey cannot be a virtual attribute",
            resource=resource,
            attribute=key_items[0].int_attr_name,
        )

    for item in provision.items:
        if not (item.ext_attr_name or "").strip():
            raise ValidationError(
                f"empty external attribute name for '{item.int_attr_name}'",
                field="ext_attr_name",
            )
        check_reference(item.category, item.int_attr_name, provision, catalog, resource=resource)


def check_reference(
    category: AttrCategory,
    name: str,
    provision: Provision,
    catalog: SchemaCatalog,
    *,
    resource: str | None = None,
) -> None:
    kind = provision.kind
    if category == AttrCategory.FIELD:
        known = name in ENTITY_FIELDS
    elif category == AttrCategory.PLAIN:
        known = catalog.has_plain(kind, name)
    elif category == AttrCategory.DERIVED:
        known = catalog.der_schema(kind, name) is not None
    else:
        known = catalog.vir_schema(kind, name) is not None
    if not known:
        raise MappingError(
            f"unknown {category.value.lower()} attribute '{name}' for {kind.value}",
            resource=resource,
            attribute=name,
        )


def validate_resource(resource: ExternalResource, catalog: SchemaCatalog) -> None:
    if not (resource.key or "").strip():
        raise ValidationError("resource key is required", field="key")
    if not (resource.connector.type or "").strip():
        raise ValidationError("connector type is required", field="connector.type")
    seen = set()
    for provision in resource.provisions:
        if provision.kind in seen:
            raise ValidationError(
                f"duplicate provision for {provision.kind.value} on '{resource.key}'",
                field="provisions",
            )
        seen.add(provision.kind)
        validate_provision(provision, catalog, resource=resource.key)
