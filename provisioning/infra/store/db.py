from __future__ import annotations

import sqlite3
from pathlib import Path

DB_FILENAME = "provisioning.sqlite3"
MEMORY = ":memory:"

_FILE_PRAGMAS = ("journal_mode = WAL",)
_COMMON_PRAGMAS = ("foreign_keys = ON", "synchronous = NORMAL", "busy_timeout = 5000")


def resolveDbPath(dataDir: str, override: str | None = None) -> str:
    """Явный путь (или ":memory:") важнее файла по умолчанию в dataDir."""
    return override or str(Path(dataDir) / DB_FILENAME)


def openDb(dbPath: str) -> sqlite3.Connection:
    """
    Назначение:
        Соединение хранилища движка.

    Контракт:
        - Autocommit-режим (isolation_level=None): транзакции открывает только
          SqliteEngine.transaction.
        - Соединение можно передавать между потоками; сериализацию делает SqliteEngine.
        - Для файловой БД включается WAL, каталог создаётся при необходимости.
    """
    inMemory = dbPath == MEMORY
    if not inMemory:
        Path(dbPath).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(dbPath, timeout=5.0, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    pragmas = _COMMON_PRAGMAS if inMemory else _FILE_PRAGMAS + _COMMON_PRAGMAS
    for pragma in pragmas:
        conn.execute(f"PRAGMA {pragma}")
    return conn
