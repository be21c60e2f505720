from __future__ import annotations

from provisioning.domain.exceptions import NotFoundError
from provisioning.domain.ports.entity_store import EntityStoreProtocol
from provisioning.domain.propagation_models import PropagationStatus
from provisioning.domain.virtual.handler import VirAttrHandler


class VirAttrService:
    """
    Назначение/ответственность:
        Чтение/запись виртуальных атрибутов по ключу сущности.
    """

    def __init__(self, store: EntityStoreProtocol, handler: VirAttrHandler):
        self.store = store
        self.handler = handler

    def read_virtual_attribute(self, entity_key: str, schema: str, run_id: str | None = None) -> list[str]:
        entity = self.store.read(entity_key)
        if entity is None:
            raise NotFoundError("entity", entity_key)
        return self.handler.read(entity, schema, run_id)

    def write_virtual_attribute(
        self,
        entity_key: str,
        schema: str,
        values: list[str],
        run_id: str | None = None,
    ) -> list[PropagationStatus]:
        """
        Контракт:
            Схема добавляется к сущности, если её не было; значения в хранилище не пишутся.
            Возвращает статусы write-through по привязанным ресурсам.
        """
        entity = self.store.read(entity_key)
        if entity is None:
            raise NotFoundError("entity", entity_key)
        self.handler.schema_for(entity, schema)
        if schema not in entity.vir_attrs:
            entity.vir_attrs.append(schema)
            entity = self.store.save(entity)
        return self.handler.write(entity, schema, values, run_id)
