from __future__ import annotations

import logging
from dataclasses import dataclass

from provisioning.config import Settings
from provisioning.domain.mapping.resolver import MappingResolver
from provisioning.domain.matching.engine import MatchingEngine
from provisioning.domain.ports.connector_gateway import ConnectorGatewayProtocol
from provisioning.domain.propagation.coordinator import PropagationCoordinator
from provisioning.domain.propagation.selection import select_resources
from provisioning.domain.virtual.cache import VirAttrCache
from provisioning.domain.virtual.handler import VirAttrHandler
from provisioning.infra.connectors.base import ConnectorSettings
from provisioning.infra.connectors.gateway import RoutingConnectorGateway
from provisioning.infra.scheduler.cron_scheduler import CronScheduler
from provisioning.infra.store.db import openDb, resolveDbPath
from provisioning.infra.store.entity_store import SqliteEntityStore
from provisioning.infra.store.execution_repository import SqliteExecutionRepository
from provisioning.infra.store.propagation_history import SqlitePropagationHistory
from provisioning.infra.store.resource_repository import SqliteResourceRepository
from provisioning.infra.store.schema import ensure_schema
from provisioning.infra.store.sqlite_engine import SqliteEngine
from provisioning.infra.store.task_repository import SqliteTaskRepository
from provisioning.usecases.cache_clear_usecase import CacheClearUseCase
from provisioning.usecases.provisioning_manager import ProvisioningManager
from provisioning.usecases.resource_service import ResourceService
from provisioning.usecases.sync_task_runner import SyncTaskRunner
from provisioning.usecases.task_service import TaskService
from provisioning.usecases.virtual_attr_service import VirAttrService


def register_builtin_plugins() -> None:
    """
    Назначение:
        Импорт модулей со встроенными реализациями; каждая регистрируется
        в реестре под своим id при импорте модуля.
    """
    import provisioning.domain.matching.correlation  # noqa: F401
    import provisioning.domain.plugins.actions  # noqa: F401
    import provisioning.infra.connectors.csv_connector  # noqa: F401
    import provisioning.infra.connectors.db_connector  # noqa: F401
    import provisioning.infra.connectors.rest_connector  # noqa: F401


@dataclass
class App:
    engine: SqliteEngine
    store: SqliteEntityStore
    resource_repo: SqliteResourceRepository
    task_repo: SqliteTaskRepository
    execution_repo: SqliteExecutionRepository
    history: SqlitePropagationHistory
    gateway: ConnectorGatewayProtocol
    cache: VirAttrCache
    resolver: MappingResolver
    virattr: VirAttrHandler
    coordinator: PropagationCoordinator
    matching: MatchingEngine
    runner: SyncTaskRunner
    scheduler: CronScheduler
    tasks: TaskService
    manager: ProvisioningManager
    virattr_service: VirAttrService
    resources: ResourceService
    cache_clear: CacheClearUseCase

    def close(self) -> None:
        self.scheduler.shutdown()
        self.runner.shutdown(wait=True)
        self.coordinator.shutdown()
        if isinstance(self.gateway, RoutingConnectorGateway):
            self.gateway.close()
        self.engine.close()


def build_app(
    settings: Settings,
    *,
    db_path: str | None = None,
    gateway: ConnectorGatewayProtocol | None = None,
    logger: logging.Logger | None = None,
) -> App:
    """
    Назначение:
        Явная сборка компонентов: каждый получает зависимости через конструктор.

    Входные данные:
        db_path: путь к БД (":memory:" для тестов); по умолчанию файл в settings.data_dir.
        gateway: подмена шлюза коннекторов (тесты).
    """
    register_builtin_plugins()

    engine = SqliteEngine(openDb(resolveDbPath(settings.data_dir, db_path)))
    ensure_schema(engine)

    store = SqliteEntityStore(engine)
    resource_repo = SqliteResourceRepository(engine)
    task_repo = SqliteTaskRepository(engine)
    execution_repo = SqliteExecutionRepository(engine)
    history = SqlitePropagationHistory(engine)

    if gateway is None:
        gateway = RoutingConnectorGateway(
            resource_repo,
            settings=ConnectorSettings(
                http_timeout_seconds=settings.http_timeout_seconds,
                http_retries=settings.connector_retries,
                retry_backoff_seconds=settings.retry_backoff_seconds,
            ),
            retries=settings.connector_retries,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            page_size=settings.page_size,
        )

    cache = VirAttrCache()
    resolver = MappingResolver(resource_repo.catalog)
    coordinator = PropagationCoordinator(
        store,
        resource_repo,
        gateway,
        resolver,
        history=history,
        pool_size=settings.propagation_pool_size,
        timeout_seconds=settings.propagation_timeout_seconds,
    )
    virattr = VirAttrHandler(
        resource_repo,
        gateway,
        resolver,
        cache,
        lambda entity: select_resources(entity, store.read),
        coordinator.propagate_virtual,
    )
    resolver.bind_virtual_reader(virattr.cached)

    matching = MatchingEngine(store, resolver, resource_repo, gateway)
    runner = SyncTaskRunner(
        task_repo,
        execution_repo,
        resource_repo,
        store,
        gateway,
        matching,
        coordinator,
        virattr,
        pool_size=settings.worker_pool_size,
    )
    scheduler = CronScheduler()

    return App(
        engine=engine,
        store=store,
        resource_repo=resource_repo,
        task_repo=task_repo,
        execution_repo=execution_repo,
        history=history,
        gateway=gateway,
        cache=cache,
        resolver=resolver,
        virattr=virattr,
        coordinator=coordinator,
        matching=matching,
        runner=runner,
        scheduler=scheduler,
        tasks=TaskService(task_repo, execution_repo, resource_repo, runner, scheduler),
        manager=ProvisioningManager(store, coordinator, virattr),
        virattr_service=VirAttrService(store, virattr),
        resources=ResourceService(resource_repo, cache),
        cache_clear=CacheClearUseCase(cache),
    )
