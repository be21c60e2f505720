from __future__ import annotations

from dataclasses import dataclass

from provisioning.domain.exceptions import ValidationError
from provisioning.domain.models import AnyTypeKind


@dataclass(frozen=True)
class KindTraits:
    """
    Назначение:
        Видо-специфичные параметры сущностей. Поведение схем, маппинга и
        кэша общее для всех видов, различаются только эти таблицы.
    """

    kind: AnyTypeKind
    namespace: str
    collection: str
    inherits_group_resources: bool


KIND_TRAITS: dict[AnyTypeKind, KindTraits] = {
    AnyTypeKind.USER: KindTraits(AnyTypeKind.USER, "user", "users", True),
    AnyTypeKind.GROUP: KindTraits(AnyTypeKind.GROUP, "group", "groups", False),
    AnyTypeKind.ANY_OBJECT: KindTraits(AnyTypeKind.ANY_OBJECT, "anyObject", "any_objects", True),
}


def traits_for(kind: AnyTypeKind) -> KindTraits:
    return KIND_TRAITS[kind]


def parse_kind(value: str | AnyTypeKind) -> AnyTypeKind:
    if isinstance(value, AnyTypeKind):
        return value
    normalized = str(value).strip().upper().replace("-", "_")
    if normalized == "ANYOBJECT":
        normalized = "ANY_OBJECT"
    try:
        return AnyTypeKind(normalized)
    except ValueError as exc:
        raise ValidationError(f"unsupported entity kind: {value}", field="kind") from exc
