from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from provisioning.common.run_id import generate_run_id
from provisioning.common.time import getNowIso
from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import MappingError, NotFoundError, TaskBusyError, ValidationError
from provisioning.domain.mapping.resolver import apply_inbound, merge_inbound, new_entity_from
from provisioning.domain.mapping.validation import validate_provision
from provisioning.domain.matching.engine import MatchingEngine
from provisioning.domain.matching.models import MatchAction, MatchDecision
from provisioning.domain.models import AnyEntity, ConnectorObject, ExternalResource, Provision
from provisioning.domain.plugins.actions import PullActions, PushActions
from provisioning.domain.plugins.registry import PluginKind, create_plugin
from provisioning.domain.ports.connector_gateway import ConnectorGatewayProtocol
from provisioning.domain.ports.entity_store import EntityStoreProtocol
from provisioning.domain.ports.repositories import (
    ExecutionRepositoryProtocol,
    ResourceRepositoryProtocol,
    TaskRepositoryProtocol,
)
from provisioning.domain.propagation.coordinator import PropagationCoordinator
from provisioning.domain.propagation_models import (
    PropagationTaskExecStatus,
    ResourceOperation,
    derive_outcome,
)
from provisioning.domain.task_models import (
    ExecStatus,
    ProvisioningTask,
    RecordFailure,
    TaskExecution,
    TaskState,
    TaskType,
    TriggerSource,
)
from provisioning.domain.virtual.handler import VirAttrHandler
from provisioning.errors import AppError
from provisioning.infra.logging.setup import getComponentLogger, logEvent


@dataclass
class _Running:
    execution: TaskExecution
    cancel_event: threading.Event
    run_id: str
    future: Future | None = None
    fatal: AppError | None = None


class ExecutionHandle:
    """
    Назначение:
        Дескриптор асинхронного исполнения задачи.
    """

    def __init__(self, running: _Running) -> None:
        self._running = running

    @property
    def execution_id(self) -> str:
        return self._running.execution.execution_id

    @property
    def task_key(self) -> str:
        return self._running.execution.task_key

    @property
    def run_id(self) -> str:
        return self._running.run_id

    def wait(self, timeout: float | None = None) -> TaskExecution:
        """Ждёт завершения и возвращает итоговую запись истории."""
        return self._running.future.result(timeout=timeout)

    def cancel(self) -> None:
        """Просит исполнение остановиться; уже отправленные вызовы коннектора не отзываются."""
        self._running.cancel_event.set()

    def done(self) -> bool:
        return self._running.future is not None and self._running.future.done()


class SyncTaskRunner:
    """
    Назначение/ответственность:
        Исполнение Pull/Push задач на пуле воркеров с взаимоисключением по id задачи.

    Инварианты/гарантии:
        - IDLE -> RUNNING -> {SUCCESS, PARTIAL, FAILURE} -> IDLE.
        - Проверка и установка RUNNING атомарны; повторный триггер отклоняется
          TaskBusyError, в очередь не ставится.
        - Ошибка одной записи фиксируется и не останавливает цикл.
        - Запись истории дописывается один раз, при завершении.
    """

    def __init__(
        self,
        tasks: TaskRepositoryProtocol,
        executions: ExecutionRepositoryProtocol,
        resource_repo: ResourceRepositoryProtocol,
        store: EntityStoreProtocol,
        gateway: ConnectorGatewayProtocol,
        matching: MatchingEngine,
        coordinator: PropagationCoordinator,
        virattr: VirAttrHandler | None = None,
        *,
        pool_size: int = 4,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tasks = tasks
        self.executions = executions
        self.resource_repo = resource_repo
        self.store = store
        self.gateway = gateway
        self.matching = matching
        self.coordinator = coordinator
        self.virattr = virattr
        self.logger = logger or getComponentLogger("runner")
        self._executor = ThreadPoolExecutor(max_workers=max(1, pool_size), thread_name_prefix="sync-task")
        self._lock = threading.Lock()
        self._running: dict[str, _Running] = {}

    def execute(self, task_key: str, trigger: TriggerSource = TriggerSource.MANUAL) -> ExecutionHandle:
        """
        Назначение:
            Запускает исполнение задачи на воркере.

        Ошибки/исключения:
            NotFoundError: задачи нет; ValidationError: задача неактивна;
            TaskBusyError: задача уже в состоянии RUNNING.
        """
        task = self.tasks.get(task_key)
        if task is None:
            raise NotFoundError("task", task_key)
        if not task.active:
            raise ValidationError(f"task '{task_key}' is not active", field="active")

        running = _Running(
            execution=TaskExecution(
                execution_id=str(uuid.uuid4()),
                task_key=task_key,
                trigger=trigger,
                started_at=getNowIso(),
            ),
            cancel_event=threading.Event(),
            run_id=generate_run_id(),
        )
        with self._lock:
            if task_key in self._running:
                raise TaskBusyError(task_key)
            self._running[task_key] = running
            try:
                running.future = self._executor.submit(self._run, task, running)
            except RuntimeError:
                del self._running[task_key]
                raise

        logEvent(
            self.logger,
            logging.INFO,
            running.run_id,
            "runner",
            f"task={task_key} type={task.task_type.value} trigger={trigger.value} execution={running.execution.execution_id} started",
        )
        return ExecutionHandle(running)

    def state(self, task_key: str) -> TaskState:
        with self._lock:
            return TaskState.RUNNING if task_key in self._running else TaskState.IDLE

    def running_execution(self, execution_id: str) -> TaskExecution | None:
        with self._lock:
            for running in self._running.values():
                if running.execution.execution_id == execution_id:
                    return running.execution
        return None

    def cancel(self, task_key: str) -> bool:
        with self._lock:
            running = self._running.get(task_key)
        if running is None:
            return False
        running.cancel_event.set()
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for running in self._running.values():
                running.cancel_event.set()
        self._executor.shutdown(wait=wait)

    def _run(self, task: ProvisioningTask, running: _Running) -> TaskExecution:
        execution = running.execution
        try:
            if task.task_type == TaskType.PULL:
                self._pull(task, running)
            else:
                self._push(task, running)
        except AppError as exc:
            running.fatal = exc
            logEvent(self.logger, logging.ERROR, running.run_id, "runner", f"task={task.key} aborted code={exc.code}: {exc}")
        except Exception as exc:
            running.fatal = AppError(
                category="runner",
                code=ErrorCode.UNEXPECTED_ERROR.value,
                message=str(exc) or type(exc).__name__,
            )
            self.logger.exception(
                "task=%s aborted by unexpected error",
                task.key,
                extra={"runId": running.run_id, "component": "runner"},
            )
        finally:
            self._finish(running)
        return execution

    def _finish(self, running: _Running) -> None:
        execution = running.execution
        counters = execution.counters
        if running.fatal is not None:
            execution.status = ExecStatus.FAILURE if counters.processed == 0 else ExecStatus.PARTIAL
            execution.message = f"{running.fatal.describe()}; {_summary(execution)}"
        elif execution.cancelled:
            execution.status = ExecStatus.PARTIAL
            execution.message = f"cancelled; {_summary(execution)}"
        else:
            execution.status = ExecStatus(
                derive_outcome(succeeded=counters.succeeded, failed=counters.failed).value
            )
            execution.message = _summary(execution)
        execution.finished_at = getNowIso()

        try:
            self.executions.append(execution)
        finally:
            with self._lock:
                self._running.pop(execution.task_key, None)
        logEvent(
            self.logger,
            logging.INFO if execution.status == ExecStatus.SUCCESS else logging.WARNING,
            running.run_id,
            "runner",
            f"task={execution.task_key} execution={execution.execution_id} status={execution.status.value} {execution.message}",
        )

    def _source(self, task: ProvisioningTask) -> tuple[ExternalResource, Provision]:
        resource = self.resource_repo.get_resource(task.resource)
        if resource is None:
            raise NotFoundError("resource", task.resource)
        provision = resource.provision_for(task.kind)
        if provision is None:
            raise MappingError(f"resource '{resource.key}' has no provision for {task.kind.value}", resource=resource.key)
        validate_provision(provision, self.resource_repo.catalog(), resource=resource.key)
        return resource, provision

    # --- pull ---

    def _pull(self, task: ProvisioningTask, running: _Running) -> None:
        resource, provision = self._source(task)
        actions: list[PullActions] = [create_plugin(PluginKind.PULL_ACTIONS, action_id) for action_id in task.actions]
        for page in self.gateway.search(resource.key, task.kind, None):
            logEvent(
                self.logger,
                logging.DEBUG,
                running.run_id,
                "pull",
                f"task={task.key} page={page.page} records={len(page.objects)}",
            )
            for record in page.objects:
                if running.cancel_event.is_set():
                    running.execution.cancelled = True
                    return
                self._pull_record(task, resource, provision, record, actions, running)

    def _pull_record(
        self,
        task: ProvisioningTask,
        resource: ExternalResource,
        provision: Provision,
        record: ConnectorObject,
        actions: list[PullActions],
        running: _Running,
    ) -> None:
        execution = running.execution
        execution.counters.processed += 1
        action_name = "FAILED"
        error_code: str | None = None
        try:
            decision = self.matching.match_pull(record, task, provision)
            action_name = decision.action.value
            if decision.failed:
                error_code = decision.error_code
                self._fail(running, record.uid, decision.error_code, decision.reason or "record rejected")
            else:
                self._apply_pull(task, resource, decision, actions, running)
        except AppError as exc:
            error_code = exc.code
            self._fail(running, record.uid, exc.code, exc.message)
        except Exception as exc:
            error_code = ErrorCode.UNEXPECTED_ERROR.value
            self._unexpected(running, record.uid, exc)
        try:
            for action in actions:
                action.after_record(record, action_name, error_code)
        except Exception:
            self.logger.exception(
                "record=%s after_record action failed",
                record.uid,
                extra={"runId": running.run_id, "component": "pull"},
            )

    def _apply_pull(
        self,
        task: ProvisioningTask,
        resource: ExternalResource,
        decision: MatchDecision,
        actions: list[PullActions],
        running: _Running,
    ) -> None:
        counters = running.execution.counters
        record = decision.record
        inbound = decision.inbound

        if decision.action in (MatchAction.IGNORE, MatchAction.SKIP):
            counters.ignored += 1
            logEvent(
                self.logger,
                logging.DEBUG,
                running.run_id,
                "pull",
                f"record={record.uid} {decision.action.value.lower()}: {decision.reason or '-'}",
            )
            return

        if decision.action == MatchAction.DELETE:
            self.store.delete(decision.candidate.key)
            if self.virattr is not None:
                self.virattr.cache.invalidate_entity(decision.candidate.key)
            counters.deleted += 1
            return

        if decision.action == MatchAction.PROVISION:
            for action in actions:
                inbound = action.before_provision(record, inbound)
                if inbound is None:
                    counters.ignored += 1
                    return
            entity = new_entity_from(task.kind, inbound, realm=task.realm, resource=resource.key)
            self.store.save(entity)
            counters.created += 1
        else:
            entity = decision.candidate.copy()
            for action in actions:
                if decision.action == MatchAction.MERGE:
                    inbound = action.before_merge(entity, record, inbound)
                else:
                    inbound = action.before_update(entity, record, inbound)
                if inbound is None:
                    counters.ignored += 1
                    return
            if decision.action == MatchAction.MERGE:
                merge_inbound(entity, inbound)
            else:
                apply_inbound(entity, inbound)
            entity.assign_resource(resource.key)
            self.store.save(entity)
            if decision.action == MatchAction.ASSIGN:
                counters.assigned += 1
            elif decision.action == MatchAction.MERGE:
                counters.merged += 1
            else:
                counters.updated += 1

        if self.virattr is not None and inbound.vir_values:
            self.virattr.refresh_from_record(entity.key, resource.key, inbound.vir_values)

    # --- push ---

    def _push(self, task: ProvisioningTask, running: _Running) -> None:
        resource, _ = self._source(task)
        actions: list[PushActions] = [create_plugin(PluginKind.PUSH_ACTIONS, action_id) for action_id in task.actions]
        execution = running.execution
        counters = execution.counters
        for entity in self.store.search(task.kind, task.realm):
            if running.cancel_event.is_set():
                execution.cancelled = True
                return
            counters.processed += 1
            try:
                self._push_entity(task, resource, entity, actions, running)
            except AppError as exc:
                self._fail(running, entity.key, exc.code, exc.message)
            except Exception as exc:
                self._unexpected(running, entity.key, exc)
            if execution.cancelled:
                return

    def _push_entity(
        self,
        task: ProvisioningTask,
        resource: ExternalResource,
        entity: AnyEntity,
        actions: list[PushActions],
        running: _Running,
    ) -> None:
        execution = running.execution
        counters = execution.counters
        decision = self.matching.match_push(entity, task, resource)
        if decision.action in (MatchAction.IGNORE, MatchAction.SKIP):
            counters.ignored += 1
            return

        target = entity
        operation = ResourceOperation.UPDATE
        if decision.action in (MatchAction.PROVISION, MatchAction.ASSIGN):
            operation = ResourceOperation.CREATE
        if decision.action == MatchAction.ASSIGN:
            target = entity.copy()
            if target.assign_resource(resource.key):
                self.store.save(target)

        report = self.coordinator.propagate(
            target,
            operation,
            resources=[resource.key],
            cancel_event=running.cancel_event,
            actions=actions,
            run_id=running.run_id,
        )
        status = report.statuses[0]
        if status.ok:
            if decision.action == MatchAction.ASSIGN:
                counters.assigned += 1
            elif operation == ResourceOperation.CREATE:
                counters.created += 1
            else:
                counters.updated += 1
        elif status.status == PropagationTaskExecStatus.NOT_ATTEMPTED:
            if running.cancel_event.is_set():
                execution.cancelled = True
                return
            counters.ignored += 1
        else:
            self._fail(
                running,
                entity.key,
                status.error_code or ErrorCode.CONNECTOR_ERROR.value,
                status.message or "propagation failed",
            )

    def _unexpected(self, running: _Running, record_key: str, exc: Exception) -> None:
        self.logger.exception(
            "task=%s record=%s unexpected error",
            running.execution.task_key,
            record_key,
            extra={"runId": running.run_id, "component": "runner"},
        )
        self._fail(running, record_key, ErrorCode.UNEXPECTED_ERROR.value, str(exc) or type(exc).__name__)

    def _fail(self, running: _Running, record_key: str, code: str, message: str) -> None:
        execution = running.execution
        execution.counters.failed += 1
        execution.failures.append(RecordFailure(record_key=record_key, code=code, message=message))
        logEvent(
            self.logger,
            logging.WARNING,
            running.run_id,
            "runner",
            f"task={execution.task_key} record={record_key} failed code={code}: {message}",
        )


def _summary(execution: TaskExecution) -> str:
    c = execution.counters
    return (
        f"processed={c.processed} created={c.created} updated={c.updated} merged={c.merged} "
        f"assigned={c.assigned} deleted={c.deleted} ignored={c.ignored} failed={c.failed}"
    )
