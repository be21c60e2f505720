from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from croniter import croniter

from provisioning.domain.exceptions import SchedulingError, TaskBusyError
from provisioning.errors import AppError
from provisioning.infra.logging.setup import getComponentLogger, logEvent


@dataclass
class _Job:
    task_key: str
    cron_expression: str
    callback: Callable[[], Any]
    next_fire: dt.datetime


def validate_cron(expression: str, task_key: str | None = None) -> None:
    """
    Ошибки/исключения:
        SchedulingError: выражение пустое или не разбирается croniter.
    """
    if not expression or not croniter.is_valid(expression):
        raise SchedulingError(
            f"invalid cron expression: {expression!r}",
            task_key=task_key,
            cron_expression=expression,
        )


class CronScheduler:
    """
    Назначение/ответственность:
        Планировщик задач по cron-выражениям (реализация SchedulerProtocol).
        Один фоновый поток; callback должен быстро возвращать управление
        (исполнение задачи уходит на пул воркеров раннера).

    Инварианты/гарантии:
        - Отказ "busy" не ставится в очередь: логируется, следующий запуск
          вычисляется как обычно.
        - Пропущенные за время простоя срабатывания не догоняются.
    """

    def __init__(
        self,
        clock: Callable[[], dt.datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))
        self.logger = logger or getComponentLogger("scheduler")
        self._jobs: dict[str, _Job] = {}
        self._cond = threading.Condition()
        self._thread: threading.Thread | None = None
        self._stopping = False

    def register_job(self, task_key: str, cron_expression: str, callback: Callable[[], Any]) -> None:
        validate_cron(cron_expression, task_key)
        with self._cond:
            self._jobs[task_key] = _Job(
                task_key=task_key,
                cron_expression=cron_expression,
                callback=callback,
                next_fire=self._next(cron_expression, self.clock()),
            )
            self._cond.notify_all()
        logEvent(self.logger, logging.INFO, None, "scheduler", f"job registered task={task_key} cron={cron_expression}")

    def unregister_job(self, task_key: str) -> None:
        with self._cond:
            removed = self._jobs.pop(task_key, None)
            self._cond.notify_all()
        if removed is not None:
            logEvent(self.logger, logging.INFO, None, "scheduler", f"job unregistered task={task_key}")

    def trigger_now(self, task_key: str) -> Any:
        with self._cond:
            job = self._jobs.get(task_key)
        if job is None:
            raise SchedulingError(f"no job registered for task '{task_key}'", task_key=task_key)
        return job.callback()

    def next_fire_time(self, task_key: str) -> dt.datetime | None:
        with self._cond:
            job = self._jobs.get(task_key)
            return job.next_fire if job is not None else None

    def jobs(self) -> list[str]:
        with self._cond:
            return sorted(self._jobs)

    def start(self) -> None:
        with self._cond:
            if self._thread is not None:
                return
            self._stopping = False
            self._thread = threading.Thread(target=self._loop, name="cron-scheduler", daemon=True)
            self._thread.start()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout)

    def run_pending(self) -> list[str]:
        """
        Назначение:
            Запускает задания, чьё время наступило, и пересчитывает следующий запуск.
        Выходные данные:
            Ключи запущенных заданий.
        """
        now = self.clock()
        with self._cond:
            due = [job for job in self._jobs.values() if job.next_fire <= now]
            for job in due:
                job.next_fire = self._next(job.cron_expression, now)
        for job in due:
            self._fire(job)
        return [job.task_key for job in due]

    def _fire(self, job: _Job) -> None:
        try:
            job.callback()
            logEvent(self.logger, logging.INFO, None, "scheduler", f"job fired task={job.task_key}")
        except TaskBusyError:
            logEvent(self.logger, logging.WARNING, None, "scheduler", f"job skipped task={job.task_key}: busy")
        except AppError as exc:
            logEvent(
                self.logger,
                logging.ERROR,
                None,
                "scheduler",
                f"job failed task={job.task_key} code={exc.code}: {exc}",
            )
        except Exception:
            self.logger.exception(
                "job failed task=%s: unexpected error",
                job.task_key,
                extra={"runId": "-", "component": "scheduler"},
            )

    def _loop(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
                timeout = self._seconds_to_next()
                if timeout > 0:
                    self._cond.wait(timeout)
                if self._stopping:
                    return
            self.run_pending()

    def _seconds_to_next(self) -> float:
        if not self._jobs:
            return 60.0
        earliest = min(job.next_fire for job in self._jobs.values())
        return max(0.0, min(60.0, (earliest - self.clock()).total_seconds()))

    @staticmethod
    def _next(expression: str, base: dt.datetime) -> dt.datetime:
        return croniter(expression, base).get_next(dt.datetime)
