from __future__ import annotations

import json

from provisioning.domain.task_models import ProvisioningTask
from provisioning.infra.store.codec import task_from_dict, task_to_dict
from provisioning.infra.store.sqlite_engine import SqliteEngine


class SqliteTaskRepository:
    def __init__(self, engine: SqliteEngine) -> None:
        self.engine = engine

    def get(self, key: str) -> ProvisioningTask | None:
        row = self.engine.fetchone("SELECT payload FROM tasks WHERE key = ?", (key,))
        if row is None:
            return None
        return task_from_dict(json.loads(row["payload"]))

    def list(self) -> list[ProvisioningTask]:
        rows = self.engine.fetchall("SELECT payload FROM tasks ORDER BY key")
        return [task_from_dict(json.loads(row["payload"])) for row in rows]

    def save(self, task: ProvisioningTask) -> None:
        with self.engine.transaction():
            self.engine.execute(
                """
                INSERT INTO tasks(key, payload, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET payload=excluded.payload, updated_at=CURRENT_TIMESTAMP
                """,
                (task.key, json.dumps(task_to_dict(task), ensure_ascii=False)),
            )

    def delete(self, key: str) -> bool:
        with self.engine.transaction():
            cur = self.engine.execute("DELETE FROM tasks WHERE key = ?", (key,))
            return cur.rowcount > 0
