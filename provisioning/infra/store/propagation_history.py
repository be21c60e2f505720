from __future__ import annotations

import json

from provisioning.domain.models import AnyTypeKind
from provisioning.domain.propagation_models import (
    PropagationStatus,
    PropagationTask,
    PropagationTaskExecStatus,
    ResourceOperation,
)
from provisioning.infra.store.sqlite_engine import SqliteEngine


class SqlitePropagationHistory:
    """
    Назначение/ответственность:
        Append-only история пар (PropagationTask, PropagationStatus).
    """

    def __init__(self, engine: SqliteEngine) -> None:
        self.engine = engine

    def append(self, task: PropagationTask, status: PropagationStatus) -> None:
        with self.engine.transaction():
            self.engine.execute(
                """
                INSERT INTO propagation_history(
                    task_id, entity_key, kind, resource, operation, conn_object_key,
                    attributes, created_at, status, message, error_code
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.task_id,
                    task.entity_key,
                    task.kind.value,
                    task.resource,
                    (status.operation or task.operation).value,
                    task.conn_object_key,
                    json.dumps(task.attributes, ensure_ascii=False),
                    task.created_at,
                    status.status.value,
                    status.message,
                    status.error_code,
                ),
            )

    def list_for_entity(self, entity_key: str) -> list[tuple[PropagationTask, PropagationStatus]]:
        rows = self.engine.fetchall(
            "SELECT * FROM propagation_history WHERE entity_key = ? ORDER BY seq",
            (entity_key,),
        )
        result: list[tuple[PropagationTask, PropagationStatus]] = []
        for row in rows:
            operation = ResourceOperation(row["operation"])
            task = PropagationTask(
                task_id=row["task_id"],
                entity_key=row["entity_key"],
                kind=AnyTypeKind(row["kind"]),
                resource=row["resource"],
                operation=operation,
                conn_object_key=row["conn_object_key"],
                attributes=json.loads(row["attributes"] or "{}"),
                created_at=row["created_at"],
            )
            status = PropagationStatus(
                resource=row["resource"],
                status=PropagationTaskExecStatus(row["status"]),
                message=row["message"],
                task_id=row["task_id"],
                operation=operation,
                conn_object_key=row["conn_object_key"],
                error_code=row["error_code"],
            )
            result.append((task, status))
        return result
