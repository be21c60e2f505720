from __future__ import annotations

from typing import Protocol

from provisioning.domain.models import AnyTypeKind, DerSchema, ExternalResource, SchemaCatalog, VirSchema
from provisioning.domain.propagation_models import PropagationStatus, PropagationTask
from provisioning.domain.task_models import ProvisioningTask, TaskExecution


class ResourceRepositoryProtocol(Protocol):
    """
    Назначение/ответственность:
        Хранение конфигурации ресурсов и справочника схем.
    """

    def get_resource(self, key: str) -> ExternalResource | None: ...
    def list_resources(self) -> list[ExternalResource]: ...
    def save_resource(self, resource: ExternalResource) -> None: ...
    def delete_resource(self, key: str) -> bool: ...

    def catalog(self) -> SchemaCatalog: ...
    def save_plain_schema(self, kind: AnyTypeKind, name: str) -> None: ...
    def save_der_schema(self, schema: DerSchema) -> None: ...
    def save_vir_schema(self, schema: VirSchema) -> None: ...
    def delete_vir_schema(self, kind: AnyTypeKind, name: str) -> bool: ...


class TaskRepositoryProtocol(Protocol):
    def get(self, key: str) -> ProvisioningTask | None: ...
    def list(self) -> list[ProvisioningTask]: ...
    def save(self, task: ProvisioningTask) -> None: ...
    def delete(self, key: str) -> bool: ...


class ExecutionRepositoryProtocol(Protocol):
    """
    Назначение/ответственность:
        Append-only история исполнений задач.
    """

    def append(self, execution: TaskExecution) -> None: ...
    def get(self, execution_id: str) -> TaskExecution | None: ...
    def list_for_task(self, task_key: str, limit: int | None = None) -> list[TaskExecution]: ...


class PropagationHistoryProtocol(Protocol):
    """
    Назначение/ответственность:
        Append-only история пропагаций (задача + статус).
    """

    def append(self, task: PropagationTask, status: PropagationStatus) -> None: ...
    def list_for_entity(self, entity_key: str) -> list[tuple[PropagationTask, PropagationStatus]]: ...
