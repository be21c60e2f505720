from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from provisioning.domain.models import AnyTypeKind


class ResourceOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class PropagationTaskExecStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"


class Outcome(str, Enum):
    """Сводный результат набора независимых операций."""

    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class PropagationTask:
    """
    Назначение:
        Одна тройка (сущность, ресурс, операция), созданная при мутации.
    Инварианты/гарантии:
        - Не изменяется после создания; сохраняется в историю вместе со статусом.
    """

    task_id: str
    entity_key: str
    kind: AnyTypeKind
    resource: str
    operation: ResourceOperation
    conn_object_key: str | None
    attributes: dict[str, list[str]] = field(default_factory=dict)
    created_at: str | None = None


@dataclass(frozen=True)
class PropagationStatus:
    """
    Назначение:
        Результат пропагации на один ресурс.
    """

    resource: str
    status: PropagationTaskExecStatus
    message: str | None = None
    task_id: str | None = None
    operation: ResourceOperation | None = None
    conn_object_key: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == PropagationTaskExecStatus.SUCCESS


@dataclass(frozen=True)
class PropagationReport:
    """
    Назначение:
        Полный упорядоченный список статусов одной мутации.
    Инварианты/гарантии:
        - Порядок статусов совпадает с порядком выбора ресурсов.
        - len(statuses) == число ресурсов, выбранных на момент dispatch.
        - NOT_ATTEMPTED в outcome не учитывается: ни успехом, ни отказом.
    """

    statuses: tuple[PropagationStatus, ...] = ()

    @property
    def outcome(self) -> Outcome:
        return derive_outcome(
            succeeded=sum(1 for s in self.statuses if s.ok),
            failed=sum(1 for s in self.statuses if s.status == PropagationTaskExecStatus.FAILURE),
        )

    def by_resource(self) -> dict[str, PropagationStatus]:
        return {status.resource: status for status in self.statuses}

    def __len__(self) -> int:
        return len(self.statuses)


def derive_outcome(*, succeeded: int, failed: int) -> Outcome:
    """
    Назначение:
        SUCCESS: нет неуспешных; FAILURE: нет успешных при наличии неуспешных;
        иначе PARTIAL.
    """
    if failed == 0:
        return Outcome.SUCCESS
    if succeeded == 0:
        return Outcome.FAILURE
    return Outcome.PARTIAL
