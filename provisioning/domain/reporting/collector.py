from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable

from provisioning.common.time import getNowIso
from provisioning.domain.propagation_models import PropagationStatus, derive_outcome
from provisioning.domain.task_models import TaskExecution


@dataclass
class ReportMeta:
    run_id: str
    command: str
    started_at: str
    finished_at: str | None = None
    duration_ms: int | None = None
    items_limit: int | None = None
    items_truncated: bool = False


@dataclass
class OpCounters:
    ok: int = 0
    failed: int = 0
    count: int = 0


@dataclass
class ReportItem:
    status: str
    key: str | None = None
    code: str | None = None
    message: str | None = None
    payload: dict[str, Any] | None = None


class ReportCollector:
    """
    Назначение/ответственность:
        JSON-отчёт одной команды CLI: счётчики по операциям, проблемные
        элементы (ограниченное число) и контекст запуска.

    Инварианты/гарантии:
        - Итоговый статус (SUCCESS/PARTIAL/FAILURE) выводится из счётчиков
          по тем же правилам, что и исход пропагации.
    """

    def __init__(self, run_id: str, command: str, items_limit: int | None = 200) -> None:
        self.meta = ReportMeta(run_id=run_id, command=command, started_at=getNowIso(), items_limit=items_limit)
        self.ops: dict[str, OpCounters] = {}
        self.items: list[ReportItem] = []
        self.context: dict[str, Any] = {}

    def set_context(self, name: str, value: dict[str, Any]) -> None:
        self.context[name] = value

    def add_op(self, name: str, *, ok: int = 0, failed: int = 0, count: int = 0) -> OpCounters:
        counters = self.ops.setdefault(name, OpCounters())
        counters.ok += ok
        counters.failed += failed
        counters.count += count
        return counters

    def add_item(
        self,
        status: str,
        *,
        key: str | None = None,
        code: str | None = None,
        message: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        limit = self.meta.items_limit
        if limit is not None and len(self.items) >= limit:
            self.meta.items_truncated = True
            return
        self.items.append(ReportItem(status=status, key=key, code=code, message=message, payload=payload))

    def add_statuses(self, name: str, statuses: Iterable[PropagationStatus], *, entity_key: str | None = None) -> int:
        """
        Назначение:
            Учитывает статусы пропагации по ресурсам; неуспешные попадают в items.
        Выходные данные:
            Число неуспешных статусов.
        """
        failed = 0
        for status in statuses:
            self.add_op(name, ok=1 if status.ok else 0, failed=0 if status.ok else 1, count=1)
            if not status.ok:
                failed += 1
                self.add_item(
                    status.status.value,
                    key=f"{entity_key}@{status.resource}" if entity_key else status.resource,
                    code=status.error_code,
                    message=status.message,
                )
        return failed

    def add_execution(self, execution: TaskExecution) -> None:
        c = execution.counters
        self.set_context(
            "execution",
            {
                "execution_id": execution.execution_id,
                "task_key": execution.task_key,
                "status": execution.status.value,
                "trigger": execution.trigger.value,
            },
        )
        self.add_op("records", ok=c.succeeded, failed=c.failed, count=c.processed)
        for failure in execution.failures:
            self.add_item("FAILED", key=failure.record_key, code=failure.code, message=failure.message)

    def finish(self, duration_ms: int | None = None) -> None:
        self.meta.finished_at = getNowIso()
        self.meta.duration_ms = duration_ms

    @property
    def status(self) -> str:
        ok = sum(c.ok for c in self.ops.values())
        failed = sum(c.failed for c in self.ops.values())
        return derive_outcome(succeeded=ok, failed=failed).value

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "meta": asdict(self.meta),
            "summary": {name: asdict(c) for name, c in self.ops.items()},
            "items": [asdict(item) for item in self.items],
            "context": self.context,
        }
