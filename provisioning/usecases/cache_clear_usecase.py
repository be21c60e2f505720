from __future__ import annotations

from provisioning.domain.exceptions import ValidationError
from provisioning.domain.virtual.cache import VirAttrCache


class CacheClearUseCase:
    """
    Назначение/ответственность:
        Административная очистка кэша виртуальных атрибутов
        (полностью, по ресурсу или по сущности).
    """

    def __init__(self, cache: VirAttrCache):
        self.cache = cache

    def clear(self, resource: str | None = None, entity_key: str | None = None) -> dict[str, int]:
        if resource and entity_key:
            raise ValidationError("use either resource or entity, not both", field="resource")
        if resource:
            removed = self.cache.invalidate_resource(resource)
        elif entity_key:
            removed = self.cache.invalidate_entity(entity_key)
        else:
            removed = self.cache.clear()
        return {"entries_removed": removed, "entries_left": self.cache.size()}
