from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """
    Назначение:
        Коды ошибок в статусах пропагации, ошибках записей pull/push
        и сообщениях CLI.
    """

    # маппинг и сопоставление
    MAPPING_ERROR = "MAPPING_ERROR"
    MATCH_AMBIGUOUS = "MATCH_AMBIGUOUS"
    ASSIGN_TARGET_NOT_FOUND = "ASSIGN_TARGET_NOT_FOUND"

    # коннекторы
    CONNECTOR_ERROR = "CONNECTOR_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    INVALID_JSON = "INVALID_JSON"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    OBJECT_NOT_FOUND = "OBJECT_NOT_FOUND"

    # движок
    TIMEOUT = "TIMEOUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SCHEDULING_ERROR = "SCHEDULING_ERROR"
    TASK_BUSY = "TASK_BUSY"
    NOT_FOUND = "NOT_FOUND"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

    @classmethod
    def from_status(cls, status_code: int | None) -> "ErrorCode":
        """Код для неуспешного HTTP-ответа ресурса; прочие статусы дают HTTP_ERROR."""
        return _BY_HTTP_STATUS.get(status_code, cls.HTTP_ERROR)


_BY_HTTP_STATUS = {
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.OBJECT_NOT_FOUND,
    408: ErrorCode.TIMEOUT,
    409: ErrorCode.CONFLICT,
}
