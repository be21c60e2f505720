from __future__ import annotations

import json
import logging
import sys
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from pathlib import Path
from typing import Any, Callable

import typer

from provisioning.common.run_id import generate_run_id
from provisioning.common.sanitize import maskSecrets
from provisioning.common.time import getDurationMs
from provisioning.config import Settings, load_settings
from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import NotFoundError
from provisioning.domain.kinds import parse_kind
from provisioning.domain.plugins.registry import PluginKind, list_plugins
from provisioning.domain.reporting.collector import ReportCollector
from provisioning.domain.task_models import ExecStatus
from provisioning.errors import AppError
from provisioning.infra.artifacts.bundle_reader import readBundle, readYamlDocument
from provisioning.infra.artifacts.report_writer import createEmptyReport, writeReportJson
from provisioning.infra.logging.setup import LoggingTee, createCommandLogger, logEvent
from provisioning.infra.store.codec import (
    entity_to_dict,
    execution_to_dict,
    resource_to_dict,
    status_to_dict,
    task_from_dict,
    task_to_dict,
)
from provisioning.wiring import App, build_app

app = typer.Typer(no_args_is_help=True, add_completion=False)
resourceApp = typer.Typer(no_args_is_help=True)
entityApp = typer.Typer(no_args_is_help=True)
taskApp = typer.Typer(no_args_is_help=True)
executionApp = typer.Typer(no_args_is_help=True)
virattrApp = typer.Typer(no_args_is_help=True)
cacheApp = typer.Typer(no_args_is_help=True)
schedulerApp = typer.Typer(no_args_is_help=True)

CommandRunner = Callable[[App, logging.Logger, ReportCollector], int]


def ensureDir(path: str) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def echoJson(data: Any) -> None:
    typer.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def runWithReport(ctx: typer.Context, commandName: str, runner: CommandRunner) -> None:
    """
    Назначение:
        Обвязка команды: лог-файл, отчёт, сборка движка и его закрытие,
        дублирование stdout/stderr в лог.

    Поведение:
        - AppError -> exc.exit_code (2 для ошибок ввода: валидация,
          не найден, cron; 1 для прочих);
        - иначе код, который вернул runner.
        Отчёт пишется всегда, в том числе при ошибке.
    """
    runId: str = ctx.obj["runId"]
    settings: Settings = ctx.obj["settings"]
    sources: list[str] = ctx.obj["sources"]

    startMonotonic = time.monotonic()
    logger, logFilePath = createCommandLogger(commandName, settings.log_dir, runId, settings.log_level)
    report = createEmptyReport(runId, commandName, settings, sources)

    streams = (sys.stdout, sys.stderr)
    sys.stdout = LoggingTee(streams[0], logger, logging.INFO, runId, "stdout")
    sys.stderr = LoggingTee(streams[1], logger, logging.ERROR, runId, "stderr")

    exitCode = 1
    try:
        logEvent(logger, logging.INFO, runId, "cli", f"command={commandName} sources={sources}")
        typer.echo(
            f"run_id={runId} command={commandName} data_dir={settings.data_dir} "
            f"workers={settings.worker_pool_size} propagation_pool={settings.propagation_pool_size}"
        )
        engine = build_app(settings)
        try:
            exitCode = runner(engine, logger, report)
        finally:
            engine.close()
    except AppError as exc:
        exitCode = exc.exit_code
        logEvent(logger, logging.ERROR, runId, exc.category, exc.describe())
        report.add_op(commandName, failed=1, count=1)
        report.add_item("FAILED", code=exc.code, message=exc.message, payload=exc.details or None)
        typer.echo(f"ERROR: {exc.message}", err=True)
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        sys.stdout, sys.stderr = streams
        reportPath = writeReportJson(
            report,
            settings.report_dir,
            getDurationMs(startMonotonic),
            logFilePath,
        )
        logEvent(logger, logging.INFO, runId, "report", f"report written: {reportPath} status={report.status}")

    raise typer.Exit(code=exitCode)



@app.callback()
def main(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="Path to config.yml"),
    runId: str | None = typer.Option(None, "--run-id", help="Run identifier (UUID). If omitted, generated."),
    logLevel: str | None = typer.Option(None, "--log-level", help="Log level: ERROR|WARN|INFO|DEBUG"),
    logDir: str | None = typer.Option(None, "--log-dir", help="Directory for logs."),
    reportDir: str | None = typer.Option(None, "--report-dir", help="Directory for reports."),
    dataDir: str | None = typer.Option(None, "--data-dir", help="Directory for the SQLite database."),
    workerPoolSize: int | None = typer.Option(None, "--worker-pool-size", help="Concurrent task executions"),
    propagationPoolSize: int | None = typer.Option(
        None, "--propagation-pool-size", help="Concurrent per-resource propagation calls"
    ),
    propagationTimeoutSeconds: float | None = typer.Option(
        None, "--propagation-timeout-seconds", help="Wait limit for one propagation"
    ),
    retries: int | None = typer.Option(None, "--retries", help="Retry attempts for connector calls"),
    retryBackoffSeconds: float | None = typer.Option(None, "--retry-backoff-seconds", help="Base backoff for retries"),
    httpTimeoutSeconds: float | None = typer.Option(None, "--http-timeout-seconds", help="REST connector timeout"),
    pageSize: int | None = typer.Option(None, "--page-size", help="Page size for connector searches"),
):
    """
    Назначение:
        Глобальная инициализация CLI:
        - генерирует/принимает run_id
        - загружает настройки (CLI > ENV > config > defaults)
        - создаёт каталоги log/report/data
        - сохраняет всё в ctx.obj для подкоманд
    """
    if not runId:
        runId = generate_run_id()

    cliOverrides = {
        "log_level": logLevel,
        "log_dir": logDir,
        "report_dir": reportDir,
        "data_dir": dataDir,
        "worker_pool_size": workerPoolSize,
        "propagation_pool_size": propagationPoolSize,
        "propagation_timeout_seconds": propagationTimeoutSeconds,
        "connector_retries": retries,
        "retry_backoff_seconds": retryBackoffSeconds,
        "http_timeout_seconds": httpTimeoutSeconds,
        "page_size": pageSize,
    }
    try:
        loaded = load_settings(config_path=config, cli_overrides=cliOverrides)
    except ValueError as exc:
        typer.echo(f"ERROR: invalid settings: {exc}", err=True)
        raise typer.Exit(code=2)

    ensureDir(loaded.settings.log_dir)
    ensureDir(loaded.settings.report_dir)
    ensureDir(loaded.settings.data_dir)

    ctx.obj = {
        "runId": runId,
        "settings": loaded.settings,
        "sources": loaded.sources_used,
        "configPath": config,
    }


@resourceApp.command("import")
def resourceImport(
    ctx: typer.Context,
    file: str = typer.Option(..., "--file", help="YAML bundle: schemas, resources, tasks, entities"),
    propagate: bool = typer.Option(
        False, "--propagate/--no-propagate", help="Propagate imported entities to their resources"
    ),
) -> None:
    """Загружает схемы, ресурсы, задачи и сущности из YAML."""

    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        bundle = readBundle(file)
        report.set_context("input", {"file": file})

        for kind, name in bundle.plain_schemas:
            engine.resources.save_plain_schema(kind, name)
        for schema in bundle.der_schemas:
            engine.resources.save_der_schema(schema)
        for schema in bundle.vir_schemas:
            engine.resources.save_vir_schema(schema)
        schemaCount = len(bundle.plain_schemas) + len(bundle.der_schemas) + len(bundle.vir_schemas)
        report.add_op("schemas", ok=schemaCount, count=schemaCount)

        for resource in bundle.resources:
            engine.resources.save_resource(resource)
            report.add_op("resources", ok=1, count=1)

        for task in bundle.tasks:
            if engine.task_repo.get(task.key) is None:
                engine.tasks.create_task(task)
            else:
                engine.tasks.update_task(task)
            report.add_op("tasks", ok=1, count=1)

        failed = 0
        for entity in bundle.entities:
            if not propagate:
                engine.store.save(entity)
                report.add_op("entities", ok=1, count=1)
                continue
            result = engine.manager.create(entity, run_id=report.meta.run_id)
            report.add_op("entities", ok=1, count=1)
            failed += report.add_statuses("propagation", result.report.statuses, entity_key=entity.key)

        typer.echo(
            f"imported schemas={schemaCount} resources={len(bundle.resources)} "
            f"tasks={len(bundle.tasks)} entities={len(bundle.entities)}"
        )
        return 1 if failed else 0

    runWithReport(ctx, "resource-import", runner)


@resourceApp.command("list")
def resourceList(ctx: typer.Context) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        resources = engine.resources.list_resources()
        for resource in resources:
            kinds = ",".join(p.kind.value for p in resource.provisions)
            typer.echo(f"{resource.key}\tconnector={resource.connector.type}\tkinds={kinds}")
        report.add_op("resources", ok=len(resources), count=len(resources))
        return 0

    runWithReport(ctx, "resource-list", runner)


@resourceApp.command("show")
def resourceShow(ctx: typer.Context, key: str = typer.Option(..., "--key", help="Resource key")) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        echoJson(maskSecrets(resource_to_dict(engine.resources.read_resource(key))))
        return 0

    runWithReport(ctx, "resource-show", runner)


@entityApp.command("show")
def entityShow(ctx: typer.Context, key: str = typer.Option(..., "--key", help="Entity key")) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        entity = engine.store.read(key)
        if entity is None:
            raise NotFoundError("entity", key)
        echoJson(entity_to_dict(entity))
        return 0

    runWithReport(ctx, "entity-show", runner)


@entityApp.command("delete")
def entityDelete(ctx: typer.Context, key: str = typer.Option(..., "--key", help="Entity key")) -> None:
    """Удаляет сущность и пропагирует удаление на её ресурсы."""

    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        result = engine.manager.delete(key, run_id=report.meta.run_id)
        failed = report.add_statuses("propagation", result.report.statuses, entity_key=key)
        typer.echo(f"entity={key} deleted outcome={result.report.outcome.value}")
        return 1 if failed else 0

    runWithReport(ctx, "entity-delete", runner)


@taskApp.command("create")
def taskCreate(
    ctx: typer.Context,
    file: str = typer.Option(..., "--file", help="YAML with one task (or 'tasks' list)"),
    replace: bool = typer.Option(False, "--replace/--no-replace", help="Update the task if it exists"),
) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        data = readYamlDocument(file)
        items = data.get("tasks") if "tasks" in data else [data]
        for item in items or []:
            task = task_from_dict(item)
            if replace and engine.task_repo.get(task.key) is not None:
                engine.tasks.update_task(task)
            else:
                engine.tasks.create_task(task)
            report.add_op("tasks", ok=1, count=1)
            typer.echo(f"task={task.key} saved type={task.task_type.value} resource={task.resource}")
        return 0

    runWithReport(ctx, "task-create", runner)


@taskApp.command("list")
def taskList(ctx: typer.Context) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        tasks = engine.tasks.list_tasks()
        for task in tasks:
            typer.echo(
                f"{task.key}\t{task.task_type.value}\tresource={task.resource}\tkind={task.kind.value}"
                f"\tactive={task.active}\tcron={task.cron_expression or '-'}"
            )
        report.add_op("tasks", ok=len(tasks), count=len(tasks))
        return 0

    runWithReport(ctx, "task-list", runner)


@taskApp.command("show")
def taskShow(ctx: typer.Context, key: str = typer.Option(..., "--key", help="Task key")) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        echoJson(task_to_dict(engine.tasks.read_task(key)))
        return 0

    runWithReport(ctx, "task-show", runner)


@taskApp.command("delete")
def taskDelete(ctx: typer.Context, key: str = typer.Option(..., "--key", help="Task key")) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        engine.tasks.delete_task(key)
        report.add_op("tasks", ok=1, count=1)
        typer.echo(f"task={key} deleted")
        return 0

    runWithReport(ctx, "task-delete", runner)


@taskApp.command("run")
def taskRun(
    ctx: typer.Context,
    key: str = typer.Option(..., "--key", help="Task key"),
    timeoutSeconds: float | None = typer.Option(None, "--timeout-seconds", help="Wait limit for the execution"),
) -> None:
    """Запускает задачу и ждёт завершения исполнения."""

    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        handle = engine.tasks.execute_task(key)
        logEvent(logger, logging.INFO, report.meta.run_id, "task", f"task={key} execution={handle.execution_id}")
        try:
            execution = handle.wait(timeoutSeconds)
        except FuturesTimeoutError:
            handle.cancel()
            raise AppError(
                category="runner",
                code=ErrorCode.TIMEOUT.value,
                message=f"task '{key}' still running after {timeoutSeconds}s; cancellation requested",
            ) from None

        report.add_execution(execution)
        typer.echo(f"execution={execution.execution_id} status={execution.status.value} {execution.message or ''}")
        return 0 if execution.status == ExecStatus.SUCCESS else 1

    runWithReport(ctx, "task-run", runner)


@executionApp.command("show")
def executionShow(ctx: typer.Context, executionId: str = typer.Option(..., "--id", help="Execution id")) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        echoJson(execution_to_dict(engine.tasks.read_execution(executionId)))
        return 0

    runWithReport(ctx, "execution-show", runner)


@executionApp.command("list")
def executionList(
    ctx: typer.Context,
    taskKey: str = typer.Option(..., "--task", help="Task key"),
    limit: int | None = typer.Option(20, "--limit", help="Most recent executions to show"),
) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        executions = engine.tasks.list_executions(taskKey, limit)
        for execution in executions:
            typer.echo(
                f"{execution.execution_id}\t{execution.status.value}\t{execution.trigger.value}"
                f"\t{execution.started_at}\t{execution.message or ''}"
            )
        report.add_op("executions", ok=len(executions), count=len(executions))
        return 0

    runWithReport(ctx, "execution-list", runner)


@virattrApp.command("read")
def virattrRead(
    ctx: typer.Context,
    entityKey: str = typer.Option(..., "--entity", help="Entity key"),
    schema: str = typer.Option(..., "--schema", help="Virtual schema name"),
) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        values = engine.virattr_service.read_virtual_attribute(entityKey, schema, report.meta.run_id)
        echoJson({"entity": entityKey, "schema": schema, "values": values})
        report.add_op("virattr_read", ok=1, count=1)
        return 0

    runWithReport(ctx, "virattr-read", runner)


@virattrApp.command("write")
def virattrWrite(
    ctx: typer.Context,
    entityKey: str = typer.Option(..., "--entity", help="Entity key"),
    schema: str = typer.Option(..., "--schema", help="Virtual schema name"),
    values: list[str] = typer.Option(..., "--value", help="Value (repeat for multi-valued)"),
) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        statuses = engine.virattr_service.write_virtual_attribute(entityKey, schema, list(values), report.meta.run_id)
        failed = report.add_statuses("virattr_write", statuses, entity_key=entityKey)
        echoJson([status_to_dict(s) for s in statuses])
        return 1 if failed else 0

    runWithReport(ctx, "virattr-write", runner)


@virattrApp.command("schemas")
def virattrSchemas(
    ctx: typer.Context,
    kind: str | None = typer.Option(None, "--kind", help="USER|GROUP|ANY_OBJECT"),
) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        schemas = engine.resources.list_vir_schemas(parse_kind(kind) if kind else None)
        for schema in schemas:
            typer.echo(f"{schema.kind.value}\t{schema.name}\tread_only={schema.read_only}")
        report.add_op("vir_schemas", ok=len(schemas), count=len(schemas))
        return 0

    runWithReport(ctx, "virattr-schemas", runner)


@cacheApp.command("clear")
def cacheClear(
    ctx: typer.Context,
    resource: str | None = typer.Option(None, "--resource", help="Clear entries of one resource"),
    entityKey: str | None = typer.Option(None, "--entity", help="Clear entries of one entity"),
) -> None:
    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        result = engine.cache_clear.clear(resource=resource, entity_key=entityKey)
        report.set_context("cache", result)
        report.add_op("cache_clear", ok=1, count=result["entries_removed"])
        typer.echo(f"removed={result['entries_removed']} left={result['entries_left']}")
        return 0

    runWithReport(ctx, "cache-clear", runner)


@schedulerApp.command("run")
def schedulerRun(
    ctx: typer.Context,
    durationSeconds: float | None = typer.Option(
        None, "--duration-seconds", help="Stop after N seconds (default: until interrupted)"
    ),
) -> None:
    """Регистрирует расписания активных задач и исполняет их до остановки."""

    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        scheduled = engine.tasks.schedule_all()
        report.set_context("scheduler", {"jobs": scheduled})
        typer.echo(f"scheduled={len(scheduled)} jobs={','.join(scheduled) or '-'}")
        engine.scheduler.start()
        deadline = time.monotonic() + durationSeconds if durationSeconds is not None else None
        try:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(0.2 if deadline is None else max(0.0, min(0.2, deadline - time.monotonic())))
        except KeyboardInterrupt:
            logEvent(logger, logging.INFO, report.meta.run_id, "scheduler", "Interrupted")
        engine.scheduler.shutdown()
        report.add_op("scheduler", ok=len(scheduled), count=len(scheduled))
        return 0

    runWithReport(ctx, "scheduler-run", runner)


@app.command("plugins")
def pluginsList(ctx: typer.Context) -> None:
    """Показывает зарегистрированные реализации (коннекторы, правила, actions)."""

    def runner(engine: App, logger: logging.Logger, report: ReportCollector) -> int:
        for kind in PluginKind:
            ids = list_plugins(kind)
            typer.echo(f"{kind.value}: {', '.join(ids) or '-'}")
            report.add_op(kind.value.lower(), ok=len(ids), count=len(ids))
        return 0

    runWithReport(ctx, "plugins", runner)


app.add_typer(resourceApp, name="resource")
app.add_typer(entityApp, name="entity")
app.add_typer(taskApp, name="task")
app.add_typer(executionApp, name="execution")
app.add_typer(virattrApp, name="virattr")
app.add_typer(cacheApp, name="cache")
app.add_typer(schedulerApp, name="scheduler")

if __name__ == "__main__":
    app()
