from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from provisioning.domain.exceptions import ValidationError


class PluginKind(str, Enum):
    PULL_ACTIONS = "PULL_ACTIONS"
    PUSH_ACTIONS = "PUSH_ACTIONS"
    CORRELATION_RULE = "CORRELATION_RULE"
    CONNECTOR = "CONNECTOR"


_registry: dict[PluginKind, dict[str, Callable[..., Any]]] = {kind: {} for kind in PluginKind}


def register(kind: PluginKind, plugin_id: str, factory: Callable[..., Any] | None = None):
    """
    Назначение:
        Регистрирует реализацию под стабильным id. Можно использовать как декоратор.

    Ошибки/исключения:
        ValueError: id уже занят другой реализацией.
    """

    def _do(target: Callable[..., Any]) -> Callable[..., Any]:
        existing = _registry[kind].get(plugin_id)
        if existing is not None and existing is not target:
            raise ValueError(f"{kind.value} '{plugin_id}' is already registered")
        _registry[kind][plugin_id] = target
        return target

    if factory is not None:
        return _do(factory)
    return _do


def get_plugin(kind: PluginKind, plugin_id: str) -> Callable[..., Any]:
    """
    Возвращает фабрику по id или ValidationError, если не зарегистрирована.
    """
    try:
        return _registry[kind][plugin_id]
    except KeyError as exc:
        raise ValidationError(f"unknown {kind.value} implementation: {plugin_id}", field=kind.value) from exc


def create_plugin(kind: PluginKind, plugin_id: str, *args: Any, **kwargs: Any) -> Any:
    return get_plugin(kind, plugin_id)(*args, **kwargs)


def is_registered(kind: PluginKind, plugin_id: str) -> bool:
    return plugin_id in _registry[kind]


def list_plugins(kind: PluginKind) -> list[str]:
    return sorted(_registry[kind])


def unregister(kind: PluginKind, plugin_id: str) -> None:
    _registry[kind].pop(plugin_id, None)
