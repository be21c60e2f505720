from __future__ import annotations

from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import MatchingAmbiguityError
from provisioning.domain.mapping.resolver import InboundAttributes, MappingResolver
from provisioning.domain.matching.correlation import CorrelationRule, KeyItemCorrelation
from provisioning.domain.matching.models import MatchAction, MatchDecision
from provisioning.domain.models import AnyEntity, ConnectorObject, ExternalResource, Provision
from provisioning.domain.plugins.registry import PluginKind, create_plugin
from provisioning.domain.ports.connector_gateway import ConnectorGatewayProtocol, read_connector_object
from provisioning.domain.ports.entity_store import EntityStoreProtocol
from provisioning.domain.ports.repositories import ResourceRepositoryProtocol
from provisioning.domain.task_models import MatchingRule, ProvisioningTask, UnmatchingRule


class MatchingEngine:
    """
    Назначение/ответственность:
        Корреляция внешней записи (pull) или внутренней сущности (push)
        с 0 или 1 объектом другой стороны и выбор действия по
        MatchingRule/UnmatchingRule. Мутаций не выполняет.

    Ошибки/исключения:
        MatchingAmbiguityError: больше одного кандидата; решается на уровне записи.
    """

    def __init__(
        self,
        store: EntityStoreProtocol,
        resolver: MappingResolver,
        resource_repo: ResourceRepositoryProtocol,
        gateway: ConnectorGatewayProtocol | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.resource_repo = resource_repo
        self.gateway = gateway

    def match_pull(self, record: ConnectorObject, task: ProvisioningTask, provision: Provision) -> MatchDecision:
        inbound = self.resolver.resolve_inbound(record, provision)
        rule_id = task.correlation_rule or "connObjectKey"
        candidate = self._single(
            self._correlation(task.correlation_rule, task.correlation_conf, provision),
            task,
            inbound,
            record,
            rule_id,
        )

        if record.deleted:
            if candidate is None:
                return MatchDecision(MatchAction.IGNORE, None, record, inbound, reason="deleted record without match")
            if not task.perform_delete:
                return MatchDecision(MatchAction.SKIP, candidate, record, inbound, reason="delete disabled")
            return MatchDecision(MatchAction.DELETE, candidate, record, inbound)

        if candidate is not None:
            return self._on_match(task, candidate, record, inbound)
        return self._on_unmatch_pull(task, provision, record, inbound)

    def match_push(self, entity: AnyEntity, task: ProvisioningTask, resource: ExternalResource) -> MatchDecision:
        """
        Назначение:
            Ищет внешнюю запись сущности на ресурсе по значению connObjectKey.

        Ошибки/исключения:
            MappingError (нет ключа), ConnectorError (ресурс недоступен).
        """
        if self.gateway is None:
            raise RuntimeError("push matching requires a connector gateway")
        key_attr, key_value = self.resolver.conn_object_key_value(entity, resource)
        existing = read_connector_object(self.gateway, resource.key, entity.kind, key_attr, key_value)

        if existing is not None:
            if task.matching_rule == MatchingRule.IGNORE:
                return MatchDecision(MatchAction.IGNORE, entity, existing, reason="matching rule IGNORE")
            if not task.perform_update:
                return MatchDecision(MatchAction.SKIP, entity, existing, reason="update disabled")
            return MatchDecision(MatchAction.UPDATE, entity, existing)

        if task.unmatching_rule == UnmatchingRule.IGNORE:
            return MatchDecision(MatchAction.IGNORE, entity, reason="unmatching rule IGNORE")
        if not task.perform_create:
            return MatchDecision(MatchAction.SKIP, entity, reason="create disabled")
        if task.unmatching_rule == UnmatchingRule.ASSIGN:
            return MatchDecision(MatchAction.ASSIGN, entity)
        return MatchDecision(MatchAction.PROVISION, entity)

    def _on_match(
        self,
        task: ProvisioningTask,
        candidate: AnyEntity,
        record: ConnectorObject,
        inbound: InboundAttributes,
    ) -> MatchDecision:
        if task.matching_rule == MatchingRule.IGNORE:
            return MatchDecision(MatchAction.IGNORE, candidate, record, inbound, reason="matching rule IGNORE")
        if not task.perform_update:
            return MatchDecision(MatchAction.SKIP, candidate, record, inbound, reason="update disabled")
        if task.matching_rule == MatchingRule.MERGE:
            return MatchDecision(MatchAction.MERGE, candidate, record, inbound)
        return MatchDecision(MatchAction.UPDATE, candidate, record, inbound)

    def _on_unmatch_pull(
        self,
        task: ProvisioningTask,
        provision: Provision,
        record: ConnectorObject,
        inbound: InboundAttributes,
    ) -> MatchDecision:
        if task.unmatching_rule == UnmatchingRule.IGNORE:
            return MatchDecision(MatchAction.IGNORE, None, record, inbound, reason="no match, unmatching rule IGNORE")

        if task.unmatching_rule == UnmatchingRule.ASSIGN:
            if not task.assign_correlation_rule:
                return MatchDecision(
                    MatchAction.ASSIGN,
                    None,
                    record,
                    inbound,
                    reason="no secondary correlation rule configured",
                    error_code=ErrorCode.ASSIGN_TARGET_NOT_FOUND.value,
                )
            target = self._single(
                self._correlation(task.assign_correlation_rule, task.assign_correlation_conf, provision),
                task,
                inbound,
                record,
                task.assign_correlation_rule,
            )
            if target is None:
                return MatchDecision(
                    MatchAction.ASSIGN,
                    None,
                    record,
                    inbound,
                    reason="no entity found by secondary correlation rule",
                    error_code=ErrorCode.ASSIGN_TARGET_NOT_FOUND.value,
                )
            if not task.perform_update:
                return MatchDecision(MatchAction.SKIP, target, record, inbound, reason="update disabled")
            return MatchDecision(MatchAction.ASSIGN, target, record, inbound)

        if not task.perform_create:
            return MatchDecision(MatchAction.SKIP, None, record, inbound, reason="create disabled")
        return MatchDecision(MatchAction.PROVISION, None, record, inbound)

    def _correlation(self, rule_id: str | None, conf: dict, provision: Provision) -> CorrelationRule:
        if rule_id:
            return create_plugin(PluginKind.CORRELATION_RULE, rule_id, conf)
        return KeyItemCorrelation(provision.key_item(), self.resource_repo.catalog())

    def _single(
        self,
        rule: CorrelationRule,
        task: ProvisioningTask,
        inbound: InboundAttributes,
        record: ConnectorObject,
        rule_id: str,
    ) -> AnyEntity | None:
        candidates = [
            entity for entity in rule.candidates(task.kind, inbound, self.store) if entity.kind == task.kind
        ]
        if len(candidates) > 1:
            raise MatchingAmbiguityError(
                inbound.conn_object_key or record.uid,
                [entity.key for entity in candidates],
                rule=rule_id,
            )
        return candidates[0] if candidates else None
