from __future__ import annotations

from typing import Any, Callable, Protocol


class SchedulerProtocol(Protocol):
    """
    Назначение/ответственность:
        Порт планировщика задач по cron-выражению.
    Ошибки/исключения:
        SchedulingError: некорректное выражение или сбой регистрации.
    """

    def register_job(self, task_key: str, cron_expression: str, callback: Callable[[], Any]) -> None: ...

    def unregister_job(self, task_key: str) -> None: ...

    def trigger_now(self, task_key: str) -> Any: ...
