from __future__ import annotations

import uuid
from datetime import datetime, timezone


def generate_run_id() -> str:
    """
    Назначение:
        Идентификатор запуска команды CLI или исполнения задачи.

    Контракт:
        "<UTC yyyymmddThhmmss>-<8 hex>": идентификаторы сортируются по времени
        и пригодны для имён файлов логов и отчётов.
    """
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"
