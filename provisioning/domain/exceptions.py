from __future__ import annotations

from typing import Any

from provisioning.domain.error_codes import ErrorCode
from provisioning.errors import AppError


class MappingError(AppError):
    """
    Назначение:
        Ошибка маппинга: нет/несколько connObjectKey, ссылка на несуществующий
        внутренний атрибут, пустой обязательный атрибут.
    Инварианты/гарантии:
        - Не ретраится.
    """

    def __init__(self, message: str, *, resource: str | None = None, attribute: str | None = None):
        super().__init__(
            category="mapping",
            code=ErrorCode.MAPPING_ERROR.value,
            message=message,
            retryable=False,
            details={"resource": resource, "attribute": attribute},
        )
        self.resource = resource
        self.attribute = attribute


class MatchingAmbiguityError(AppError):
    """
    Назначение:
        Больше одного кандидата корреляции для внешней записи.
        Фиксируется на уровне записи, не прерывает исполнение задачи.
    """

    def __init__(self, record_key: str, candidates: list[str], rule: str | None = None):
        suffix = f" ({rule})" if rule else ""
        super().__init__(
            category="matching",
            code=ErrorCode.MATCH_AMBIGUOUS.value,
            message=f"multiple internal candidates found for '{record_key}'{suffix}: {', '.join(candidates)}",
            details={"record_key": record_key, "candidates": list(candidates), "rule": rule},
        )
        self.record_key = record_key
        self.candidates = list(candidates)


class ConnectorError(AppError):
    """
    Назначение:
        Ошибка транспорта/аутентификации при обращении к внешней системе.
    Контракт:
        - retryable=True только для транзиентных транспортных ошибок.
        - Ошибки аутентификации/конфигурации всегда retryable=False.
    """

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        code: str = ErrorCode.CONNECTOR_ERROR.value,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ):
        merged = dict(details or {})
        merged.setdefault("resource", resource)
        super().__init__(category="connector", code=code, message=message, retryable=retryable, details=merged)
        self.resource = resource


class ObjectNotFoundError(AppError):
    """
    Назначение:
        Внешняя запись не найдена. Отличается от ConnectorError:
        это ответ системы, а не сбой доступа к ней.
    """

    def __init__(self, resource: str, conn_object_key: str | None):
        super().__init__(
            category="connector",
            code=ErrorCode.OBJECT_NOT_FOUND.value,
            message=f"object '{conn_object_key}' not found on resource '{resource}'",
            details={"resource": resource, "conn_object_key": conn_object_key},
        )
        self.resource = resource
        self.conn_object_key = conn_object_key


class SchedulingError(AppError):
    """Ошибка регистрации cron-задания; фатальна для задачи."""

    exit_code = 2

    def __init__(self, message: str, *, task_key: str | None = None, cron_expression: str | None = None):
        super().__init__(
            category="scheduling",
            code=ErrorCode.SCHEDULING_ERROR.value,
            message=message,
            details={"task_key": task_key, "cron_expression": cron_expression},
        )
        self.task_key = task_key


class ValidationError(AppError):
    """Некорректная конфигурация задачи/маппинга/ресурса; отклоняется до исполнения."""

    exit_code = 2

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(
            category="validation",
            code=ErrorCode.VALIDATION_ERROR.value,
            message=message,
            details={"field": field},
        )
        self.field = field


class TaskBusyError(AppError):
    """Триггер получен, пока задача в состоянии RUNNING. Не ставится в очередь."""

    def __init__(self, task_key: str):
        super().__init__(
            category="scheduling",
            code=ErrorCode.TASK_BUSY.value,
            message=f"task '{task_key}' is busy",
            details={"task_key": task_key},
        )
        self.task_key = task_key


class NotFoundError(AppError):
    """Внутренний объект (сущность, задача, ресурс, исполнение) не найден."""

    exit_code = 2

    def __init__(self, what: str, key: str):
        super().__init__(
            category="store",
            code=ErrorCode.NOT_FOUND.value,
            message=f"{what} '{key}' not found",
            details={"what": what, "key": key},
        )
        self.what = what
        self.key = key


__all__ = [
    "ConnectorError",
    "MappingError",
    "MatchingAmbiguityError",
    "NotFoundError",
    "ObjectNotFoundError",
    "SchedulingError",
    "TaskBusyError",
    "ValidationError",
]
