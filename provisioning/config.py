from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

ENV_PREFIX = "PROV_"

LOG_LEVELS = ("ERROR", "WARN", "WARNING", "INFO", "DEBUG")


def _atLeast(minimum: int) -> Callable[[Any], int]:
    def parse(v: Any) -> int:
        value = int(v)
        if value < minimum:
            raise ValueError(f"must be >= {minimum}")
        return value

    return parse


def _seconds(v: Any) -> float:
    value = float(v)
    if value < 0:
        raise ValueError("must be >= 0")
    return value


def _logLevel(v: Any) -> str:
    value = str(v).strip().upper()
    if value not in LOG_LEVELS:
        raise ValueError(f"expected one of {', '.join(LOG_LEVELS)}")
    return value


def _setting(default: Any, parse: Callable[[Any], Any]) -> Any:
    return field(default=default, metadata={"parse": parse})


@dataclass(frozen=True)
class Settings:
    data_dir: str = _setting("./data", str)
    log_dir: str = _setting("./logs", str)
    report_dir: str = _setting("./reports", str)
    log_level: str = _setting("INFO", _logLevel)

    worker_pool_size: int = _setting(4, _atLeast(1))
    propagation_pool_size: int = _setting(8, _atLeast(1))
    propagation_timeout_seconds: float = _setting(30.0, _seconds)

    connector_retries: int = _setting(2, _atLeast(0))
    retry_backoff_seconds: float = _setting(0.5, _seconds)
    http_timeout_seconds: float = _setting(20.0, _seconds)
    page_size: int = _setting(100, _atLeast(1))


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    sources_used: list[str]


def _configLayer(configPath: str | None) -> dict[str, Any]:
    """YAML-файл настроек; отсутствующий файл или корень не-словарь дают пустой слой."""
    if not configPath:
        return {}
    path = Path(configPath)
    if not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _envLayer(names: list[str]) -> dict[str, str]:
    layer: dict[str, str] = {}
    for name in names:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}", "").strip()
        if raw:
            layer[name] = raw
    return layer


def load_settings(config_path: str | None, cli_overrides: Mapping[str, Any]) -> LoadedSettings:
    """
    Назначение:
        Собирает Settings из слоёв: defaults < YAML < ENV (PROV_<NAME>) < CLI.

    Контракт:
        - CLI-параметр со значением None считается непереданным.
        - sources_used перечисляет непустые слои в порядке применения.

    Ошибки/исключения:
        ValueError: неизвестный CLI-параметр или значение, не прошедшее разбор.
    """
    declared = {f.name: f for f in fields(Settings)}

    cli = {k: v for k, v in cli_overrides.items() if v is not None}
    unknown = sorted(set(cli) - set(declared))
    if unknown:
        raise ValueError(f"Unknown setting: {', '.join(unknown)}")

    layers = [
        ("config", _configLayer(config_path)),
        ("env", _envLayer(list(declared))),
        ("cli", cli),
    ]

    raw: dict[str, Any] = {name: f.default for name, f in declared.items()}
    sources: list[str] = []
    for source, layer in layers:
        if not layer:
            continue
        sources.append(source)
        raw.update({k: v for k, v in layer.items() if k in declared})

    values: dict[str, Any] = {}
    for name, f in declared.items():
        try:
            values[name] = f.metadata["parse"](raw[name])
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid value for {name}: {raw[name]!r} ({exc})") from exc

    return LoadedSettings(settings=Settings(**values), sources_used=sources)
