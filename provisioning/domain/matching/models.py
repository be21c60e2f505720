from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from provisioning.domain.mapping.resolver import InboundAttributes
from provisioning.domain.models import AnyEntity, ConnectorObject


class MatchAction(str, Enum):
    UPDATE = "UPDATE"
    IGNORE = "IGNORE"
    MERGE = "MERGE"
    PROVISION = "PROVISION"
    ASSIGN = "ASSIGN"
    DELETE = "DELETE"
    SKIP = "SKIP"


@dataclass(frozen=True)
class MatchDecision:
    """
    Назначение:
        Результат корреляции и выбора политики для одной записи/сущности.
    Поля:
        candidate: найденная внутренняя сущность (0 или 1).
        inbound: входящие атрибуты записи (только pull).
        error_code: код отказа, если действие выполнить нельзя
            (например, ASSIGN без вторичного кандидата).
    """

    action: MatchAction
    candidate: AnyEntity | None = None
    record: ConnectorObject | None = None
    inbound: InboundAttributes | None = None
    reason: str | None = None
    error_code: str | None = None

    @property
    def failed(self) -> bool:
        return self.error_code is not None
