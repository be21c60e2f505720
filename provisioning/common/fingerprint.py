from __future__ import annotations

import hashlib
import json
from typing import Any


def build_fingerprint(payload: dict[str, Any]) -> str:
    """
    Назначение:
        Отпечаток конфигурации коннектора: изменение типа или свойств ресурса
        даёт новый отпечаток, и шлюз пересоздаёт экземпляр коннектора.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
