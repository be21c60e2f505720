from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


@dataclass
class AppError(Exception):
    """
    Базовая ошибка движка провижининга.

    Поля:
        category: подсистема-источник (mapping, matching, connector, runner, ...).
        code: значение ErrorCode; попадает в статусы пропагации и ошибки записей.
        retryable: сбой транзиентный, повтор имеет смысл.
        details: контекст для лога и отчёта (ресурс, ключ записи, ...).

    exit_code: код выхода CLI для ошибки этого класса.
    """

    category: str
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    exit_code: ClassVar[int] = 1

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def describe(self) -> str:
        return f"{self.code}: {self.message}"


__all__ = ["AppError"]
