from __future__ import annotations

import logging

from provisioning.domain.exceptions import NotFoundError, SchedulingError, ValidationError
from provisioning.domain.mapping.validation import validate_provision
from provisioning.domain.plugins.registry import PluginKind, create_plugin, is_registered
from provisioning.domain.ports.repositories import (
    ExecutionRepositoryProtocol,
    ResourceRepositoryProtocol,
    TaskRepositoryProtocol,
)
from provisioning.domain.ports.scheduler import SchedulerProtocol
from provisioning.domain.task_models import (
    MatchingRule,
    ProvisioningTask,
    TaskExecution,
    TaskType,
    TriggerSource,
    UnmatchingRule,
)
from provisioning.infra.logging.setup import getComponentLogger, logEvent
from provisioning.usecases.sync_task_runner import ExecutionHandle, SyncTaskRunner


class TaskService:
    """
    Назначение/ответственность:
        Операции над задачами для вызывающих слоёв (CLI/API):
        создание/изменение/удаление с валидацией и регистрацией в планировщике,
        запуск и чтение истории исполнений.
    """

    def __init__(
        self,
        tasks: TaskRepositoryProtocol,
        executions: ExecutionRepositoryProtocol,
        resource_repo: ResourceRepositoryProtocol,
        runner: SyncTaskRunner,
        scheduler: SchedulerProtocol | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tasks = tasks
        self.executions = executions
        self.resource_repo = resource_repo
        self.runner = runner
        self.scheduler = scheduler
        self.logger = logger or getComponentLogger("tasks")

    def create_task(self, task: ProvisioningTask) -> ProvisioningTask:
        """
        Ошибки/исключения:
            ValidationError: некорректная задача или ключ занят;
            SchedulingError: cron не зарегистрирован (задача не сохраняется).
        """
        self.validate(task)
        if self.tasks.get(task.key) is not None:
            raise ValidationError(f"task '{task.key}' already exists", field="key")
        self._schedule(task)
        try:
            self.tasks.save(task)
        except Exception:
            self._unschedule(task.key)
            raise
        logEvent(self.logger, logging.INFO, None, "tasks", f"task created key={task.key} type={task.task_type.value}")
        return task

    def update_task(self, task: ProvisioningTask) -> ProvisioningTask:
        """
        Контракт:
            При ошибке регистрации cron прежняя задача и её расписание сохраняются.
        """
        previous = self.tasks.get(task.key)
        if previous is None:
            raise NotFoundError("task", task.key)
        self.validate(task)
        if task.active and task.cron_expression:
            self._schedule(task)
        else:
            self._unschedule(task.key)
        try:
            self.tasks.save(task)
        except Exception:
            if previous.active and previous.cron_expression:
                self._schedule(previous)
            else:
                self._unschedule(task.key)
            raise
        logEvent(self.logger, logging.INFO, None, "tasks", f"task updated key={task.key}")
        return task

    def delete_task(self, task_key: str) -> None:
        if self.tasks.get(task_key) is None:
            raise NotFoundError("task", task_key)
        self._unschedule(task_key)
        self.runner.cancel(task_key)
        self.tasks.delete(task_key)
        logEvent(self.logger, logging.INFO, None, "tasks", f"task deleted key={task_key}")

    def read_task(self, task_key: str) -> ProvisioningTask:
        task = self.tasks.get(task_key)
        if task is None:
            raise NotFoundError("task", task_key)
        return task

    def list_tasks(self) -> list[ProvisioningTask]:
        return self.tasks.list()

    def execute_task(self, task_key: str, trigger: TriggerSource = TriggerSource.MANUAL) -> ExecutionHandle:
        return self.runner.execute(task_key, trigger)

    def read_execution(self, execution_id: str) -> TaskExecution:
        execution = self.runner.running_execution(execution_id) or self.executions.get(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    def list_executions(self, task_key: str, limit: int | None = None) -> list[TaskExecution]:
        return self.executions.list_for_task(task_key, limit)

    def schedule_all(self) -> list[str]:
        """Регистрирует расписания всех активных задач с cron (старт планировщика)."""
        scheduled: list[str] = []
        for task in self.tasks.list():
            if not (task.active and task.cron_expression):
                continue
            try:
                self._schedule(task)
                scheduled.append(task.key)
            except SchedulingError as exc:
                logEvent(self.logger, logging.ERROR, None, "tasks", f"task={task.key} not scheduled: {exc}")
        return scheduled

    def validate(self, task: ProvisioningTask) -> None:
        if not (task.key or "").strip():
            raise ValidationError("task key is required", field="key")
        if not task.realm.startswith("/"):
            raise ValidationError(f"realm must start with '/': {task.realm}", field="realm")

        resource = self.resource_repo.get_resource(task.resource)
        if resource is None:
            raise ValidationError(f"unknown resource '{task.resource}'", field="resource")
        provision = resource.provision_for(task.kind)
        if provision is None:
            raise ValidationError(
                f"resource '{task.resource}' has no provision for {task.kind.value}",
                field="kind",
            )
        validate_provision(provision, self.resource_repo.catalog(), resource=resource.key)

        actions_kind = PluginKind.PULL_ACTIONS if task.task_type == TaskType.PULL else PluginKind.PUSH_ACTIONS
        for action_id in task.actions:
            if not is_registered(actions_kind, action_id):
                raise ValidationError(f"unknown {actions_kind.value} implementation: {action_id}", field="actions")

        if task.task_type == TaskType.PUSH:
            if task.matching_rule == MatchingRule.MERGE:
                raise ValidationError("MERGE matching rule is only supported by pull tasks", field="matching_rule")
            if task.correlation_rule or task.assign_correlation_rule:
                raise ValidationError("correlation rules are only supported by pull tasks", field="correlation_rule")
        else:
            if task.correlation_rule:
                create_plugin(PluginKind.CORRELATION_RULE, task.correlation_rule, task.correlation_conf)
            if task.unmatching_rule == UnmatchingRule.ASSIGN:
                if not task.assign_correlation_rule:
                    raise ValidationError(
                        "ASSIGN unmatching rule requires an assign correlation rule",
                        field="assign_correlation_rule",
                    )
                create_plugin(PluginKind.CORRELATION_RULE, task.assign_correlation_rule, task.assign_correlation_conf)

    def _schedule(self, task: ProvisioningTask) -> None:
        if self.scheduler is None or not task.cron_expression or not task.active:
            return
        task_key = task.key
        self.scheduler.register_job(
            task_key,
            task.cron_expression,
            lambda: self.runner.execute(task_key, TriggerSource.SCHEDULED),
        )

    def _unschedule(self, task_key: str) -> None:
        if self.scheduler is not None:
            self.scheduler.unregister_job(task_key)
