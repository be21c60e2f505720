from __future__ import annotations

import logging
from pathlib import Path
from typing import TextIO

ROOT_LOGGER_NAME = "provisioning"

LOG_FORMAT = "%(asctime)s %(levelname)s runId=%(runId)s comp=%(component)s thread=%(threadName)s msg=%(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

_LEVELS = {
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


class RunContextFilter(logging.Filter):
    """
    Назначение:
        Подставляет runId команды и компонент по умолчанию в записи,
        пришедшие из потоков движка без этих полей.
    """

    def __init__(self, runId: str, defaultComponent: str = "engine"):
        super().__init__()
        self.runId = runId
        self.defaultComponent = defaultComponent

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "runId", None) in (None, "-"):
            record.runId = self.runId
        if not hasattr(record, "component"):
            record.component = self.defaultComponent
        return True


class LoggingTee:
    """
    Назначение:
        Обёртка stdout/stderr команды: текст уходит в исходный поток,
        а завершённые строки дублируются в лог.
    """

    def __init__(self, stream: TextIO, logger: logging.Logger, level: int, runId: str, component: str):
        self.stream = stream
        self.logger = logger
        self.level = level
        self.extra = {"runId": runId, "component": component}
        self._pending = ""

    def write(self, s: str) -> int:
        written = self.stream.write(s)
        self._pending += s
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            if line.strip():
                self.logger.log(self.level, line.rstrip(), extra=self.extra)
        return written

    def flush(self) -> None:
        self.stream.flush()
        if self._pending.strip():
            self.logger.log(self.level, self._pending.rstrip(), extra=self.extra)
        self._pending = ""


def mapLogLevel(levelName: str) -> int:
    """
    Входные данные:
        levelName: ERROR|WARN|INFO|DEBUG (регистр не важен)
    """
    try:
        return _LEVELS[(levelName or "").strip().upper()]
    except KeyError:
        raise ValueError(f"Unsupported log level: {levelName}") from None


def getComponentLogger(component: str) -> logging.Logger:
    """
    Назначение:
        Логгер компонента движка ("provisioning.<component>") для случаев,
        когда вызывающий не передал свой. Без настроенных обработчиков
        наружу не пишет.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        root.addHandler(logging.NullHandler())
    return root.getChild(component)


def createCommandLogger(commandName: str, logDir: str, runId: str, logLevel: str) -> tuple[logging.Logger, str]:
    """
    Назначение:
        Направляет логи движка в файл команды CLI.

    Контракт:
        - Файл "<command>_<runId>.log" в logDir; обработчик вешается на
          корневой логгер "provisioning", поэтому в файл попадают события
          пропагации, кэша, раннера и планировщика из любых потоков.
        - Файловый обработчик предыдущей команды в том же процессе снимается.

    Выходные данные:
        (logger команды, путь к log-файлу)
    """
    Path(logDir).mkdir(parents=True, exist_ok=True)
    logFilePath = str(Path(logDir) / f"{commandName}_{runId}.log")
    level = mapLogLevel(logLevel)

    fileHandler = logging.FileHandler(logFilePath, encoding="utf-8")
    fileHandler.setLevel(level)
    fileHandler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    fileHandler.addFilter(RunContextFilter(runId=runId))

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in [h for h in root.handlers if isinstance(h, logging.FileHandler)]:
        root.removeHandler(handler)
        handler.close()
    root.addHandler(fileHandler)
    root.setLevel(level)

    logger = root.getChild(f"cli.{commandName}")
    logger.setLevel(level)
    return logger, logFilePath


def logEvent(logger: logging.Logger, level: int, runId: str | None, component: str, message: str) -> None:
    """Запись события с runId/component; runId=None заменяется runId текущей команды."""
    logger.log(level, message, extra={"runId": runId or "-", "component": component})
