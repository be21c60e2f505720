from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from provisioning.domain.exceptions import ValidationError
from provisioning.domain.kinds import parse_kind
from provisioning.domain.models import AnyEntity, AnyTypeKind, DerSchema, ExternalResource, VirSchema
from provisioning.domain.task_models import ProvisioningTask
from provisioning.infra.store.codec import entity_from_dict, resource_from_dict, task_from_dict


@dataclass
class ConfigBundle:
    """
    Назначение:
        Содержимое YAML-файла конфигурации: схемы, ресурсы, задачи, сущности.
    """

    plain_schemas: list[tuple[AnyTypeKind, str]] = field(default_factory=list)
    der_schemas: list[DerSchema] = field(default_factory=list)
    vir_schemas: list[VirSchema] = field(default_factory=list)
    resources: list[ExternalResource] = field(default_factory=list)
    tasks: list[ProvisioningTask] = field(default_factory=list)
    entities: list[AnyEntity] = field(default_factory=list)


def readYamlDocument(path: str) -> dict[str, Any]:
    """
    Ошибки/исключения:
        ValidationError: файла нет, YAML не разбирается или корень не словарь.
    """
    p = Path(path)
    if not p.is_file():
        raise ValidationError(f"file not found: {path}", field="path")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"invalid YAML in {path}: {exc}", field="path") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"{path}: top-level mapping expected", field="path")
    return data


def parseBundle(data: dict[str, Any]) -> ConfigBundle:
    """
    Формат:
        schemas:
          USER:
            plain: [firstname, surname, email]
            derived: {fullname: "{firstname} {surname}"}
            virtual: [{name: virtualdata, read_only: false}]
        resources: [...]
        tasks: [...]
        entities: [...]
    """
    bundle = ConfigBundle()
    schemas = data.get("schemas") or {}
    if not isinstance(schemas, dict):
        raise ValidationError("schemas must be a mapping by entity kind", field="schemas")
    for raw_kind, section in schemas.items():
        kind = parse_kind(raw_kind)
        section = section or {}
        for name in section.get("plain") or []:
            bundle.plain_schemas.append((kind, str(name)))
        for name, expression in (section.get("derived") or {}).items():
            bundle.der_schemas.append(DerSchema(str(name), kind, str(expression)))
        for item in section.get("virtual") or []:
            if isinstance(item, str):
                bundle.vir_schemas.append(VirSchema(item, kind))
            else:
                bundle.vir_schemas.append(VirSchema(str(item["name"]), kind, bool(item.get("read_only", False))))

    bundle.resources = [resource_from_dict(item) for item in data.get("resources") or []]
    bundle.tasks = [task_from_dict(item) for item in data.get("tasks") or []]
    bundle.entities = [entity_from_dict(item) for item in data.get("entities") or []]
    return bundle


def readBundle(path: str) -> ConfigBundle:
    return parseBundle(readYamlDocument(path))
