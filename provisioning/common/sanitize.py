from __future__ import annotations

from typing import Any

SECRET_MASK = "***"

_SECRET_MARKERS = ("password", "token", "secret", "authorization", "api_key", "credential")


def isSecretName(name: str) -> bool:
    """Имя свойства коннектора или атрибута похоже на секрет (password, ca_token, ...)."""
    lowered = name.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def maskSecrets(obj: Any) -> Any:
    """
    Назначение:
        Копия структуры dict/list для вывода в stdout и логи, где значения
        секретных ключей заменены на маску.

    Контракт:
        Многозначный атрибут маскируется поэлементно, число значений сохраняется.
        None не маскируется.
    """
    if isinstance(obj, dict):
        return {k: _maskValue(v) if isinstance(k, str) and isSecretName(k) else maskSecrets(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [maskSecrets(item) for item in obj]
    return obj


def _maskValue(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [SECRET_MASK] * len(value)
    return SECRET_MASK


def clip(text: str | None, limit: int = 500) -> str | None:
    """Сообщение коннектора в историю пропагации не длиннее limit символов."""
    if text is None or len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."
