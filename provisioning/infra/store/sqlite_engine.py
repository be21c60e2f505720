from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

Params = Sequence[Any] | dict[str, Any]


class SqliteEngine:
    """
    Назначение/ответственность:
        Единая точка доступа репозиториев к SQLite.

    Инварианты/гарантии:
        - Одно соединение на процесс, общее для воркеров задач и пула
          пропагации; каждый вызов выполняется под RLock.
        - transaction() реентерабельна в пределах потока: вложенный блок
          становится частью внешней транзакции.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = threading.RLock()
        self._depth = 0

    def execute(self, sql: str, params: Params = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params or ())

    def executemany(self, sql: str, rows: Sequence[Params]) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.executemany(sql, rows)

    def fetchone(self, sql: str, params: Params = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params or ()).fetchone()

    def fetchall(self, sql: str, params: Params = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params or ()).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outer = self._depth == 0
            if outer:
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outer:
                    self.conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outer:
                self.conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self.conn.close()
