from __future__ import annotations

from typing import Callable, Iterable

from provisioning.domain.kinds import traits_for
from provisioning.domain.models import AnyEntity

GroupReader = Callable[[str], AnyEntity | None]


def select_resources(
    entity: AnyEntity,
    group_reader: GroupReader | None = None,
    *,
    restrict_to: Iterable[str] | None = None,
) -> list[str]:
    """
    Назначение:
        Ресурсы сущности на момент вызова: сначала прямые в порядке хранения,
        затем ресурсы групп в порядке членства. Дубли отбрасываются.

    Входные данные:
        group_reader: чтение группы по ключу (None: без наследования).
        restrict_to: ограничение набора (push-задачи, write-through).
    """
    selected: list[str] = []
    for resource in entity.resources:
        if resource not in selected:
            selected.append(resource)

    if group_reader is not None and traits_for(entity.kind).inherits_group_resources:
        for group_key in entity.memberships:
            group = group_reader(group_key)
            if group is None:
                continue
            for resource in group.resources:
                if resource not in selected:
                    selected.append(resource)

    if restrict_to is not None:
        allowed = list(restrict_to)
        selected = [resource for resource in selected if resource in allowed]
    return selected
