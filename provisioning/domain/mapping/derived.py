from __future__ import annotations

import re
from typing import Mapping

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.-]*)\}")


def referenced_attrs(expression: str) -> list[str]:
    """Имена plain-атрибутов, на которые ссылается шаблон, в порядке появления."""
    names: list[str] = []
    for match in _PLACEHOLDER.finditer(expression or ""):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def render_derived(expression: str, plain_attrs: Mapping[str, list[str]]) -> list[str]:
    """
    Назначение:
        Вычисляет значение производного атрибута по шаблону "{a}.{b}".

    Контракт:
        - Подставляется первое значение каждого атрибута.
        - Если хотя бы один атрибут отсутствует или пуст, результат пустой.
        - Возвращает список из одного значения или пустой список.
    """
    missing = False

    def _sub(match: re.Match) -> str:
        nonlocal missing
        values = plain_attrs.get(match.group(1)) or []
        if not values or values[0] in (None, ""):
            missing = True
            return ""
        return str(values[0])

    rendered = _PLACEHOLDER.sub(_sub, expression or "")
    if missing or rendered == "":
        return []
    return [rendered]
