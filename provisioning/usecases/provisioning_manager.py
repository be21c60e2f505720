from __future__ import annotations

import logging
from dataclasses import dataclass, field

from provisioning.domain.exceptions import NotFoundError, ValidationError
from provisioning.domain.models import AnyEntity
from provisioning.domain.ports.entity_store import EntityStoreProtocol
from provisioning.domain.propagation.coordinator import PropagationCoordinator
from provisioning.domain.propagation_models import PropagationReport, ResourceOperation
from provisioning.domain.virtual.handler import VirAttrHandler
from provisioning.infra.logging.setup import getComponentLogger, logEvent


@dataclass
class EntityPatch:
    """
    Назначение:
        Изменение сущности. plain_attrs заменяют значения атрибутов целиком;
        vir_values уходят write-through и в хранилище не пишутся.
    """

    name: str | None = None
    realm: str | None = None
    plain_attrs: dict[str, list[str]] = field(default_factory=dict)
    remove_plain_attrs: list[str] = field(default_factory=list)
    add_resources: list[str] = field(default_factory=list)
    remove_resources: list[str] = field(default_factory=list)
    add_memberships: list[str] = field(default_factory=list)
    remove_memberships: list[str] = field(default_factory=list)
    vir_values: dict[str, list[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class MutationResult:
    entity: AnyEntity
    report: PropagationReport


class ProvisioningManager:
    """
    Назначение/ответственность:
        Внутренние мутации сущностей: сначала commit в хранилище, затем
        пропагация. Результат пропагации не откатывает мутацию и
        возвращается как данные (статусы по ресурсам).
    """

    def __init__(
        self,
        store: EntityStoreProtocol,
        coordinator: PropagationCoordinator,
        virattr: VirAttrHandler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.virattr = virattr
        self.logger = logger or getComponentLogger("provisioning")

    def create(
        self,
        entity: AnyEntity,
        *,
        vir_values: dict[str, list[str]] | None = None,
        run_id: str | None = None,
    ) -> MutationResult:
        if self.store.read(entity.key) is not None:
            raise ValidationError(f"entity '{entity.key}' already exists", field="key")
        draft = entity.copy()
        for schema in vir_values or {}:
            if schema not in draft.vir_attrs:
                draft.vir_attrs.append(schema)
        saved = self.store.save(draft)
        report = self.coordinator.propagate(saved, ResourceOperation.CREATE, vir_values=vir_values, run_id=run_id)
        self._remember(saved, report, vir_values)
        self._log("create", saved, report, run_id)
        return MutationResult(saved, report)

    def update(self, entity_key: str, patch: EntityPatch, *, run_id: str | None = None) -> MutationResult:
        current = self.store.read(entity_key)
        if current is None:
            raise NotFoundError("entity", entity_key)

        draft = current.copy()
        if patch.name:
            draft.name = patch.name
        if patch.realm:
            draft.realm = patch.realm
        for name, values in patch.plain_attrs.items():
            draft.plain_attrs[name] = list(values)
        for name in patch.remove_plain_attrs:
            draft.plain_attrs.pop(name, None)
        for resource in patch.add_resources:
            draft.assign_resource(resource)
        draft.resources = [r for r in draft.resources if r not in patch.remove_resources]
        for group in patch.add_memberships:
            if group not in draft.memberships:
                draft.memberships.append(group)
        draft.memberships = [g for g in draft.memberships if g not in patch.remove_memberships]
        for schema in patch.vir_values:
            if schema not in draft.vir_attrs:
                draft.vir_attrs.append(schema)

        saved = self.store.save(draft)
        binding_changed = saved.resources != current.resources or saved.memberships != current.memberships
        if binding_changed and self.virattr is not None:
            self.virattr.cache.invalidate_entity(entity_key)

        removed = [r for r in patch.remove_resources if r in current.resources]
        report = self.coordinator.propagate(
            saved,
            ResourceOperation.UPDATE,
            vir_values=patch.vir_values or None,
            removed_resources=removed,
            run_id=run_id,
        )
        self._remember(saved, report, patch.vir_values)
        self._log("update", saved, report, run_id)
        return MutationResult(saved, report)

    def delete(self, entity_key: str, *, run_id: str | None = None) -> MutationResult:
        removed = self.store.delete(entity_key)
        if removed is None:
            raise NotFoundError("entity", entity_key)
        if self.virattr is not None:
            self.virattr.cache.invalidate_entity(entity_key)
        report = self.coordinator.propagate(removed, ResourceOperation.DELETE, run_id=run_id)
        self._log("delete", removed, report, run_id)
        return MutationResult(removed, report)

    def _remember(self, entity: AnyEntity, report: PropagationReport, vir_values: dict[str, list[str]] | None) -> None:
        if self.virattr is not None and vir_values:
            self.virattr.remember(entity, report.statuses, vir_values)

    def _log(self, operation: str, entity: AnyEntity, report: PropagationReport, run_id: str | None) -> None:
        logEvent(
            self.logger,
            logging.INFO,
            run_id,
            "provisioning",
            f"{operation} entity={entity.key} kind={entity.kind.value} "
            f"resources={len(report)} outcome={report.outcome.value}",
        )
