from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from provisioning.common.sanitize import clip
from provisioning.common.time import getNowIso
from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import ObjectNotFoundError
from provisioning.domain.mapping.resolver import MappingResolver
from provisioning.domain.models import AnyEntity, ConnObjectPayload
from provisioning.domain.plugins.actions import PushActions
from provisioning.domain.ports.connector_gateway import ConnectorGatewayProtocol
from provisioning.domain.ports.entity_store import EntityStoreProtocol
from provisioning.domain.ports.repositories import PropagationHistoryProtocol, ResourceRepositoryProtocol
from provisioning.domain.propagation.selection import select_resources
from provisioning.domain.propagation_models import (
    Outcome,
    PropagationReport,
    PropagationStatus,
    PropagationTask,
    PropagationTaskExecStatus,
    ResourceOperation,
)
from provisioning.errors import AppError
from provisioning.infra.logging.setup import getComponentLogger, logEvent


@dataclass
class _Slot:
    task: PropagationTask
    payload: ConnObjectPayload | None = None
    status: PropagationStatus | None = None
    future: Future | None = None
    started: float | None = None
    finished: float | None = None


class PropagationCoordinator:
    """
    Назначение/ответственность:
        Пропагация внутренней мутации на ресурсы сущности с независимым
        статусом по каждому ресурсу.

    Инварианты/гарантии:
        - Число статусов равно числу ресурсов, выбранных на момент dispatch.
        - Порядок статусов совпадает с порядком выбора ресурсов.
        - Ошибка одного ресурса не мешает остальным и не откатывает мутацию.
        - Вызов коннектора ограничен timeout_seconds с момента его старта на
          воркере; не уложившийся ресурс получает FAILURE (TIMEOUT).
        - Ресурс, ждущий свободного воркера дольше timeout_seconds без
          продвижения других ресурсов этого вызова, снимается с очереди до
          обращения к коннектору и получает FAILURE (TIMEOUT).
        - Ошибки push-actions и записи истории не прерывают пропагацию.
    """

    def __init__(
        self,
        store: EntityStoreProtocol,
        resource_repo: ResourceRepositoryProtocol,
        gateway: ConnectorGatewayProtocol,
        resolver: MappingResolver,
        *,
        history: PropagationHistoryProtocol | None = None,
        pool_size: int = 4,
        timeout_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.resource_repo = resource_repo
        self.gateway = gateway
        self.resolver = resolver
        self.history = history
        self.timeout_seconds = timeout_seconds
        self.logger = logger or getComponentLogger("propagation")
        self._executor = ThreadPoolExecutor(max_workers=max(1, pool_size), thread_name_prefix="propagation")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def select(
        self,
        entity: AnyEntity,
        operation: ResourceOperation,
        *,
        resources: Iterable[str] | None = None,
        removed_resources: Iterable[str] = (),
    ) -> list[tuple[str, ResourceOperation]]:
        """
        Назначение:
            Целевые ресурсы мутации.

        Контракт:
            - resources задаёт явный набор целей (push-задачи, write-through).
            - Иначе прямые ресурсы, затем ресурсы групп, без дублей.
            - removed_resources добавляются в конец как DELETE.
        """
        if resources is not None:
            selected: list[str] = []
            for resource in resources:
                if resource not in selected:
                    selected.append(resource)
        else:
            selected = select_resources(entity, self._read_group)

        targets = [(resource, operation) for resource in selected]
        for resource in removed_resources:
            if resource not in selected:
                selected.append(resource)
                targets.append((resource, ResourceOperation.DELETE))
        return targets

    def propagate(
        self,
        entity: AnyEntity,
        operation: ResourceOperation,
        *,
        resources: Iterable[str] | None = None,
        vir_values: Mapping[str, list[str]] | None = None,
        removed_resources: Iterable[str] = (),
        cancel_event: threading.Event | None = None,
        actions: Sequence[PushActions] = (),
        run_id: str | None = None,
    ) -> PropagationReport:
        targets = self.select(entity, operation, resources=resources, removed_resources=removed_resources)
        slots = [self._prepare(entity, resource, op, vir_values, actions) for resource, op in targets]

        for slot in slots:
            if slot.status is not None:
                continue
            if cancel_event is not None and cancel_event.is_set():
                slot.status = self._status(slot.task, PropagationTaskExecStatus.NOT_ATTEMPTED, "cancelled")
                continue
            slot.future = self._executor.submit(self._run_slot, slot)

        self._await(slots)

        statuses = tuple(slot.status for slot in slots)
        for slot in slots:
            self._record(entity, slot, actions, run_id)

        report = PropagationReport(statuses=statuses)
        logEvent(
            self.logger,
            logging.INFO if report.outcome == Outcome.SUCCESS else logging.WARNING,
            run_id,
            "propagation",
            f"entity={entity.key} op={operation.value} resources={len(statuses)} outcome={report.outcome.value}",
        )
        return report

    def propagate_virtual(
        self,
        entity: AnyEntity,
        resource: str,
        schema: str,
        values: list[str],
        run_id: str | None = None,
    ) -> PropagationStatus:
        """Write-through одного виртуального атрибута на один ресурс."""
        report = self.propagate(
            entity,
            ResourceOperation.UPDATE,
            resources=[resource],
            vir_values={schema: values},
            run_id=run_id,
        )
        return report.statuses[0]

    def _read_group(self, key: str) -> AnyEntity | None:
        return self.store.read(key)

    def _run_slot(self, slot: _Slot) -> PropagationStatus:
        slot.started = time.monotonic()
        try:
            return self._dispatch(slot.task, slot.payload)
        finally:
            slot.finished = time.monotonic()

    def _await(self, slots: list[_Slot]) -> None:
        """
        Назначение:
            Ожидание отправленных слотов с дедлайном на каждый вызов коннектора.

        Контракт:
            - Стартовавший слот ждём timeout_seconds от его старта.
            - Слот в очереди пула ждём, пока другие слоты этого вызова
              продвигаются (стартуют или завершаются); после timeout_seconds
              без продвижения он отменяется, коннектор не вызывается.
        """
        timeout = self.timeout_seconds
        live = [slot for slot in slots if slot.future is not None]
        begun = time.monotonic()
        while live:
            now = time.monotonic()
            progress = max([begun] + [t for slot in slots for t in (slot.started, slot.finished) if t is not None])
            deadlines: list[float] = []
            for slot in list(live):
                if slot.future.done():
                    slot.status = slot.future.result()
                    live.remove(slot)
                    continue
                if slot.started is not None:
                    deadline = slot.started + timeout
                    if now >= deadline:
                        slot.status = self._status(
                            slot.task,
                            PropagationTaskExecStatus.FAILURE,
                            f"timeout after {timeout}s",
                            code=ErrorCode.TIMEOUT.value,
                        )
                        live.remove(slot)
                        continue
                else:
                    deadline = progress + timeout
                    if now >= deadline:
                        if slot.future.cancel():
                            slot.status = self._status(
                                slot.task,
                                PropagationTaskExecStatus.FAILURE,
                                f"not dispatched within {timeout}s: propagation pool busy",
                                code=ErrorCode.TIMEOUT.value,
                            )
                            live.remove(slot)
                            continue
                        # воркер уже взял слот, отметка старта вот-вот появится
                        deadline = now + timeout
                deadlines.append(deadline)
            if live:
                wait(
                    [slot.future for slot in live],
                    timeout=max(0.0, min(deadlines) - time.monotonic()),
                    return_when=FIRST_COMPLETED,
                )

    def _record(self, entity: AnyEntity, slot: _Slot, actions: Sequence[PushActions], run_id: str | None) -> None:
        try:
            if self.history is not None:
                self.history.append(slot.task, slot.status)
        except Exception:
            self.logger.exception(
                "history append failed resource=%s entity=%s",
                slot.task.resource,
                entity.key,
                extra={"runId": run_id or "-", "component": "propagation"},
            )
        for action in actions:
            try:
                action.after_propagation(entity, slot.task.resource, slot.status)
            except Exception:
                self.logger.exception(
                    "after_propagation failed action=%s resource=%s",
                    type(action).__name__,
                    slot.task.resource,
                    extra={"runId": run_id or "-", "component": "propagation"},
                )

    def _prepare(
        self,
        entity: AnyEntity,
        resource_key: str,
        operation: ResourceOperation,
        vir_values: Mapping[str, list[str]] | None,
        actions: Sequence[PushActions],
    ) -> _Slot:
        slot = _Slot(
            task=PropagationTask(
                task_id=str(uuid.uuid4()),
                entity_key=entity.key,
                kind=entity.kind,
                resource=resource_key,
                operation=operation,
                conn_object_key=None,
                created_at=getNowIso(),
            )
        )

        source = entity
        for action in actions:
            try:
                source = action.before_propagation(source, resource_key)
            except AppError as exc:
                slot.status = self._status(slot.task, PropagationTaskExecStatus.FAILURE, str(exc), code=exc.code)
                return slot
            except Exception as exc:
                self.logger.exception(
                    "before_propagation failed action=%s resource=%s",
                    type(action).__name__,
                    resource_key,
                    extra={"runId": "-", "component": "propagation"},
                )
                slot.status = self._status(
                    slot.task,
                    PropagationTaskExecStatus.FAILURE,
                    str(exc) or type(exc).__name__,
                    code=ErrorCode.UNEXPECTED_ERROR.value,
                )
                return slot
            if source is None:
                slot.status = self._status(slot.task, PropagationTaskExecStatus.NOT_ATTEMPTED, "skipped by action")
                return slot

        resource = self.resource_repo.get_resource(resource_key)
        if resource is None:
            slot.status = self._status(
                slot.task,
                PropagationTaskExecStatus.FAILURE,
                f"resource '{resource_key}' not found",
                code=ErrorCode.NOT_FOUND.value,
            )
            return slot

        try:
            if operation == ResourceOperation.DELETE:
                key_attr, key_value = self.resolver.conn_object_key_value(source, resource)
                payload = ConnObjectPayload(key_attr=key_attr, key_value=key_value, attrs={key_attr: [key_value]})
            else:
                payload = self.resolver.resolve_outbound(source, resource, vir_values)
        except AppError as exc:
            slot.status = self._status(slot.task, PropagationTaskExecStatus.FAILURE, str(exc), code=exc.code)
            return slot

        slot.payload = payload
        slot.task = PropagationTask(
            task_id=slot.task.task_id,
            entity_key=entity.key,
            kind=entity.kind,
            resource=resource_key,
            operation=operation,
            conn_object_key=payload.key_value,
            attributes=payload.attrs,
            created_at=slot.task.created_at,
        )
        return slot

    def _dispatch(self, task: PropagationTask, payload: ConnObjectPayload) -> PropagationStatus:
        operation = task.operation
        try:
            if operation == ResourceOperation.CREATE:
                self.gateway.create(task.resource, task.kind, payload)
            elif operation == ResourceOperation.UPDATE:
                try:
                    self.gateway.update(task.resource, task.kind, payload)
                except ObjectNotFoundError:
                    operation = ResourceOperation.CREATE
                    self.gateway.create(task.resource, task.kind, payload)
            else:
                try:
                    self.gateway.delete(task.resource, task.kind, payload)
                except ObjectNotFoundError:
                    return self._status(
                        task, PropagationTaskExecStatus.SUCCESS, "object already absent", operation=operation
                    )
        except AppError as exc:
            logEvent(
                self.logger,
                logging.WARNING,
                None,
                "propagation",
                f"dispatch failed resource={task.resource} key={task.conn_object_key} code={exc.code}: {exc}",
            )
            return self._status(task, PropagationTaskExecStatus.FAILURE, str(exc), code=exc.code, operation=operation)
        except Exception as exc:
            logEvent(
                self.logger,
                logging.ERROR,
                None,
                "propagation",
                f"unexpected dispatch error resource={task.resource}: {exc!r}",
            )
            return self._status(
                task,
                PropagationTaskExecStatus.FAILURE,
                str(exc) or type(exc).__name__,
                code=ErrorCode.UNEXPECTED_ERROR.value,
                operation=operation,
            )
        return self._status(task, PropagationTaskExecStatus.SUCCESS, None, operation=operation)

    @staticmethod
    def _status(
        task: PropagationTask,
        status: PropagationTaskExecStatus,
        message: str | None,
        *,
        code: str | None = None,
        operation: ResourceOperation | None = None,
    ) -> PropagationStatus:
        return PropagationStatus(
            resource=task.resource,
            status=status,
            message=clip(message),
            task_id=task.task_id,
            operation=operation or task.operation,
            conn_object_key=task.conn_object_key,
            error_code=code,
        )
