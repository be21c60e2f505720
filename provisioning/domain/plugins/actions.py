from __future__ import annotations

import logging

from provisioning.domain.mapping.resolver import InboundAttributes
from provisioning.domain.models import AnyEntity, ConnectorObject
from provisioning.domain.plugins.registry import PluginKind, register
from provisioning.domain.propagation_models import PropagationStatus
from provisioning.infra.logging.setup import getComponentLogger, logEvent


class PullActions:
    """
    Назначение:
        Точки расширения обработки записи pull. Реализация по умолчанию ничего не меняет.

    Контракт:
        - before_* возвращают (возможно изменённые) входящие атрибуты;
          None означает "пропустить запись" (учитывается как ignored).
        - after_record вызывается для каждой записи, включая ошибочные.
    """

    def before_provision(self, record: ConnectorObject, inbound: InboundAttributes) -> InboundAttributes | None:
        return inbound

    def before_update(
        self, entity: AnyEntity, record: ConnectorObject, inbound: InboundAttributes
    ) -> InboundAttributes | None:
        return inbound

    def before_merge(
        self, entity: AnyEntity, record: ConnectorObject, inbound: InboundAttributes
    ) -> InboundAttributes | None:
        return inbound

    def after_record(self, record: ConnectorObject, action: str, error_code: str | None) -> None:
        return None


class PushActions:
    """
    Назначение:
        Точки расширения пропагации. before_propagation может вернуть None,
        тогда ресурс получает статус NOT_ATTEMPTED.
    """

    def before_propagation(self, entity: AnyEntity, resource: str) -> AnyEntity | None:
        return entity

    def after_propagation(self, entity: AnyEntity, resource: str, status: PropagationStatus) -> None:
        return None


@register(PluginKind.PULL_ACTIONS, "logging")
class LoggingPullActions(PullActions):
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or getComponentLogger("pull.actions")

    def after_record(self, record: ConnectorObject, action: str, error_code: str | None) -> None:
        level = logging.WARNING if error_code else logging.DEBUG
        logEvent(self.logger, level, None, "pull", f"record={record.uid} action={action} error={error_code or '-'}")


@register(PluginKind.PULL_ACTIONS, "lowercase-name")
class LowercaseNamePullActions(PullActions):
    """Приводит входящее имя сущности к нижнему регистру."""

    def _lower(self, inbound: InboundAttributes) -> InboundAttributes:
        if inbound.fields.get("name"):
            inbound.fields["name"] = inbound.fields["name"].lower()
        return inbound

    def before_provision(self, record, inbound):
        return self._lower(inbound)

    def before_update(self, entity, record, inbound):
        return self._lower(inbound)


@register(PluginKind.PULL_ACTIONS, "merge-keep-internal")
class KeepInternalMergePullActions(PullActions):
    """MERGE: внешние значения добавляются только в пустые внутренние атрибуты."""

    def before_merge(self, entity, record, inbound):
        inbound.plain_attrs = {
            name: values for name, values in inbound.plain_attrs.items() if not entity.plain_attrs.get(name)
        }
        return inbound


@register(PluginKind.PUSH_ACTIONS, "logging")
class LoggingPushActions(PushActions):
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or getComponentLogger("push.actions")

    def after_propagation(self, entity: AnyEntity, resource: str, status: PropagationStatus) -> None:
        level = logging.DEBUG if status.ok else logging.WARNING
        logEvent(
            self.logger,
            level,
            None,
            "push",
            f"entity={entity.key} resource={resource} status={status.status.value} msg={status.message or '-'}",
        )
