from __future__ import annotations

import json

from provisioning.domain.task_models import TaskExecution
from provisioning.infra.store.codec import execution_from_dict, execution_to_dict
from provisioning.infra.store.sqlite_engine import SqliteEngine


class SqliteExecutionRepository:
    """
    Назначение/ответственность:
        Append-only история исполнений задач. Повторная запись с тем же
        execution_id отклоняется (IntegrityError).
    """

    def __init__(self, engine: SqliteEngine) -> None:
        self.engine = engine

    def append(self, execution: TaskExecution) -> None:
        with self.engine.transaction():
            self.engine.execute(
                """
                INSERT INTO executions(execution_id, task_key, trigger, status, started_at, finished_at, message, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.execution_id,
                    execution.task_key,
                    execution.trigger.value,
                    execution.status.value,
                    execution.started_at,
                    execution.finished_at,
                    execution.message,
                    json.dumps(execution_to_dict(execution), ensure_ascii=False),
                ),
            )

    def get(self, execution_id: str) -> TaskExecution | None:
        row = self.engine.fetchone("SELECT payload FROM executions WHERE execution_id = ?", (execution_id,))
        if row is None:
            return None
        return execution_from_dict(json.loads(row["payload"]))

    def list_for_task(self, task_key: str, limit: int | None = None) -> list[TaskExecution]:
        sql = "SELECT payload FROM executions WHERE task_key = ? ORDER BY started_at DESC, rowid DESC"
        params: tuple = (task_key,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (task_key, int(limit))
        return [execution_from_dict(json.loads(row["payload"])) for row in self.engine.fetchall(sql, params)]
