from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from provisioning.domain.models import AnyTypeKind


class TaskType(str, Enum):
    PULL = "PULL"
    PUSH = "PUSH"


class MatchingRule(str, Enum):
    UPDATE = "UPDATE"
    IGNORE = "IGNORE"
    MERGE = "MERGE"


class UnmatchingRule(str, Enum):
    PROVISION = "PROVISION"
    ASSIGN = "ASSIGN"
    IGNORE = "IGNORE"


class TaskState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class ExecStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILURE = "FAILURE"


class TriggerSource(str, Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"


@dataclass
class ProvisioningTask:
    """
    Назначение:
        Определение задачи Pull (вход) или Push (выход).
    Поля:
        actions: упорядоченный список id реализаций из реестра.
        correlation_rule: id правила корреляции (None: по connObjectKey).
        assign_correlation_rule: вторичное правило для UnmatchingRule.ASSIGN.
    """

    key: str
    task_type: TaskType
    resource: str
    kind: AnyTypeKind
    realm: str = "/"
    cron_expression: str | None = None
    matching_rule: MatchingRule = MatchingRule.UPDATE
    unmatching_rule: UnmatchingRule = UnmatchingRule.PROVISION
    actions: list[str] = field(default_factory=list)
    correlation_rule: str | None = None
    correlation_conf: dict[str, Any] = field(default_factory=dict)
    assign_correlation_rule: str | None = None
    assign_correlation_conf: dict[str, Any] = field(default_factory=dict)
    perform_create: bool = True
    perform_update: bool = True
    perform_delete: bool = False
    active: bool = True
    description: str = ""


@dataclass(frozen=True)
class RecordFailure:
    """
    Назначение:
        Ошибка обработки одной записи (pull) или сущности (push).
    """

    record_key: str
    code: str
    message: str


@dataclass
class ExecutionCounters:
    processed: int = 0
    created: int = 0
    updated: int = 0
    merged: int = 0
    assigned: int = 0
    deleted: int = 0
    ignored: int = 0
    failed: int = 0

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.merged + self.assigned + self.deleted + self.ignored


@dataclass
class TaskExecution:
    """
    Назначение:
        Запись истории исполнения задачи.
    Инварианты/гарантии:
        - Дописывается в историю один раз, при завершении (append-only).
    """

    execution_id: str
    task_key: str
    trigger: TriggerSource
    started_at: str
    status: ExecStatus = ExecStatus.RUNNING
    finished_at: str | None = None
    message: str | None = None
    counters: ExecutionCounters = field(default_factory=ExecutionCounters)
    failures: list[RecordFailure] = field(default_factory=list)
    cancelled: bool = False
