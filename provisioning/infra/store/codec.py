from __future__ import annotations

from typing import Any, Mapping

from provisioning.domain.exceptions import ValidationError
from provisioning.domain.kinds import parse_kind
from provisioning.domain.models import (
    AnyEntity,
    AttrCategory,
    ConnectorConf,
    ExternalResource,
    MappingItem,
    MappingPurpose,
    Provision,
)
from provisioning.domain.propagation_models import PropagationStatus
from provisioning.domain.task_models import (
    ExecStatus,
    ExecutionCounters,
    MatchingRule,
    ProvisioningTask,
    RecordFailure,
    TaskExecution,
    TaskType,
    TriggerSource,
    UnmatchingRule,
)


def _enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in enum_cls)
        raise ValidationError(f"invalid {field}: {value!r} (allowed: {allowed})", field=field) from exc


def _required(data: Mapping[str, Any], name: str, prefix: str = "") -> Any:
    value = data.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{prefix}{name} is required", field=f"{prefix}{name}")
    return value


def _values(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(v) for v in raw]
    return [str(raw)]


def entity_to_dict(entity: AnyEntity) -> dict[str, Any]:
    return {
        "key": entity.key,
        "kind": entity.kind.value,
        "name": entity.name,
        "realm": entity.realm,
        "plain_attrs": {name: list(values) for name, values in entity.plain_attrs.items()},
        "der_attrs": list(entity.der_attrs),
        "vir_attrs": list(entity.vir_attrs),
        "resources": list(entity.resources),
        "memberships": list(entity.memberships),
    }


def entity_from_dict(data: Mapping[str, Any]) -> AnyEntity:
    return AnyEntity(
        key=str(_required(data, "key")),
        kind=parse_kind(_required(data, "kind")),
        name=str(_required(data, "name")),
        realm=str(data.get("realm") or "/"),
        plain_attrs={str(k): _values(v) for k, v in (data.get("plain_attrs") or {}).items()},
        der_attrs=[str(v) for v in data.get("der_attrs") or []],
        vir_attrs=[str(v) for v in data.get("vir_attrs") or []],
        resources=[str(v) for v in data.get("resources") or []],
        memberships=[str(v) for v in data.get("memberships") or []],
    )


def mapping_item_to_dict(item: MappingItem) -> dict[str, Any]:
    return {
        "int_attr_name": item.int_attr_name,
        "category": item.category.value,
        "ext_attr_name": item.ext_attr_name,
        "purpose": item.purpose.value,
        "conn_object_key": item.conn_object_key,
        "mandatory": item.mandatory,
    }


def mapping_item_from_dict(data: Mapping[str, Any]) -> MappingItem:
    return MappingItem(
        int_attr_name=str(_required(data, "int_attr_name", "mapping.")),
        category=_enum(AttrCategory, data.get("category", "PLAIN"), "mapping.category"),
        ext_attr_name=str(data.get("ext_attr_name") or ""),
        purpose=_enum(MappingPurpose, data.get("purpose", "BOTH"), "mapping.purpose"),
        conn_object_key=bool(data.get("conn_object_key", False)),
        mandatory=bool(data.get("mandatory", False)),
    )


def resource_to_dict(resource: ExternalResource) -> dict[str, Any]:
    return {
        "key": resource.key,
        "description": resource.description,
        "connector": {"type": resource.connector.type, "properties": dict(resource.connector.properties)},
        "provisions": [
            {
                "kind": provision.kind.value,
                "mapping": [mapping_item_to_dict(item) for item in provision.items],
            }
            for provision in resource.provisions
        ],
    }


def resource_from_dict(data: Mapping[str, Any]) -> ExternalResource:
    connector = data.get("connector") or {}
    if not isinstance(connector, Mapping):
        raise ValidationError("connector must be a mapping", field="connector")
    return ExternalResource(
        key=str(_required(data, "key")),
        description=str(data.get("description") or ""),
        connector=ConnectorConf(
            type=str(_required(connector, "type", "connector.")),
            properties=dict(connector.get("properties") or {}),
        ),
        provisions=[
            Provision(
                kind=parse_kind(_required(provision, "kind", "provision.")),
                items=[mapping_item_from_dict(item) for item in provision.get("mapping") or []],
            )
            for provision in data.get("provisions") or []
        ],
    )


def task_to_dict(task: ProvisioningTask) -> dict[str, Any]:
    return {
        "key": task.key,
        "task_type": task.task_type.value,
        "resource": task.resource,
        "kind": task.kind.value,
        "realm": task.realm,
        "cron_expression": task.cron_expression,
        "matching_rule": task.matching_rule.value,
        "unmatching_rule": task.unmatching_rule.value,
        "actions": list(task.actions),
        "correlation_rule": task.correlation_rule,
        "correlation_conf": dict(task.correlation_conf),
        "assign_correlation_rule": task.assign_correlation_rule,
        "assign_correlation_conf": dict(task.assign_correlation_conf),
        "perform_create": task.perform_create,
        "perform_update": task.perform_update,
        "perform_delete": task.perform_delete,
        "active": task.active,
        "description": task.description,
    }


def task_from_dict(data: Mapping[str, Any]) -> ProvisioningTask:
    return ProvisioningTask(
        key=str(_required(data, "key")),
        task_type=_enum(TaskType, _required(data, "task_type"), "task_type"),
        resource=str(_required(data, "resource")),
        kind=parse_kind(data.get("kind") or "USER"),
        realm=str(data.get("realm") or "/"),
        cron_expression=data.get("cron_expression") or None,
        matching_rule=_enum(MatchingRule, data.get("matching_rule", "UPDATE"), "matching_rule"),
        unmatching_rule=_enum(UnmatchingRule, data.get("unmatching_rule", "PROVISION"), "unmatching_rule"),
        actions=[str(v) for v in data.get("actions") or []],
        correlation_rule=data.get("correlation_rule") or None,
        correlation_conf=dict(data.get("correlation_conf") or {}),
        assign_correlation_rule=data.get("assign_correlation_rule") or None,
        assign_correlation_conf=dict(data.get("assign_correlation_conf") or {}),
        perform_create=bool(data.get("perform_create", True)),
        perform_update=bool(data.get("perform_update", True)),
        perform_delete=bool(data.get("perform_delete", False)),
        active=bool(data.get("active", True)),
        description=str(data.get("description") or ""),
    )


def execution_to_dict(execution: TaskExecution) -> dict[str, Any]:
    c = execution.counters
    return {
        "execution_id": execution.execution_id,
        "task_key": execution.task_key,
        "trigger": execution.trigger.value,
        "status": execution.status.value,
        "started_at": execution.started_at,
        "finished_at": execution.finished_at,
        "message": execution.message,
        "cancelled": execution.cancelled,
        "counters": {
            "processed": c.processed,
            "created": c.created,
            "updated": c.updated,
            "merged": c.merged,
            "assigned": c.assigned,
            "deleted": c.deleted,
            "ignored": c.ignored,
            "failed": c.failed,
        },
        "failures": [
            {"record_key": f.record_key, "code": f.code, "message": f.message} for f in execution.failures
        ],
    }


def execution_from_dict(data: Mapping[str, Any]) -> TaskExecution:
    return TaskExecution(
        execution_id=str(data["execution_id"]),
        task_key=str(data["task_key"]),
        trigger=TriggerSource(data["trigger"]),
        started_at=str(data["started_at"]),
        status=ExecStatus(data["status"]),
        finished_at=data.get("finished_at"),
        message=data.get("message"),
        counters=ExecutionCounters(**(data.get("counters") or {})),
        failures=[RecordFailure(**f) for f in data.get("failures") or []],
        cancelled=bool(data.get("cancelled", False)),
    )


def status_to_dict(status: PropagationStatus) -> dict[str, Any]:
    return {
        "resource": status.resource,
        "status": status.status.value,
        "operation": status.operation.value if status.operation else None,
        "conn_object_key": status.conn_object_key,
        "message": status.message,
        "error_code": status.error_code,
        "task_id": status.task_id,
    }
