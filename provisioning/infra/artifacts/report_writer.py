from __future__ import annotations

import json
from pathlib import Path

from provisioning.config import Settings
from provisioning.domain.reporting.collector import ReportCollector


def createEmptyReport(runId: str, command: str, settings: Settings, configSources: list[str]) -> ReportCollector:
    """
    Назначение:
        Отчёт команды с контекстом запуска: источники настроек и размеры пулов.
    """
    report = ReportCollector(run_id=runId, command=command)
    report.set_context(
        "config",
        {
            "sources": list(configSources),
            "worker_pool_size": settings.worker_pool_size,
            "propagation_pool_size": settings.propagation_pool_size,
            "propagation_timeout_seconds": settings.propagation_timeout_seconds,
            "page_size": settings.page_size,
        },
    )
    return report


def writeReportJson(report: ReportCollector, reportDir: str, durationMs: int, logFile: str | None) -> str:
    """
    Назначение:
        Завершает отчёт и записывает report_<command>_<runId>.json.

    Контракт:
        Файл пишется через временный и переименовывается, частично
        записанный отчёт не остаётся.

    Выходные данные:
        Путь к файлу отчёта.
    """
    report.set_context("runtime", {"log_file": logFile, "report_dir": reportDir})
    report.finish(duration_ms=durationMs)

    target = Path(reportDir) / f"report_{report.meta.command}_{report.meta.run_id}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(".json.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, ensure_ascii=False, indent=2, default=str)
    tmp.replace(target)
    return str(target)
