from __future__ import annotations

from provisioning.infra.store.sqlite_engine import SqliteEngine

_V1 = (
    """
    CREATE TABLE entities (
        key TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        name TEXT NOT NULL,
        realm TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX idx_entities_kind_name ON entities(kind, name)",
    # индекс поиска по plain-атрибутам: одна строка на значение
    """
    CREATE TABLE entity_attrs (
        entity_key TEXT NOT NULL REFERENCES entities(key) ON DELETE CASCADE,
        name TEXT NOT NULL,
        position INTEGER NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (entity_key, name, position)
    )
    """,
    "CREATE INDEX idx_entity_attrs_lookup ON entity_attrs(name, value)",
    "CREATE TABLE resources (key TEXT PRIMARY KEY, payload TEXT NOT NULL, updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP)",
    "CREATE TABLE plain_schemas (kind TEXT NOT NULL, name TEXT NOT NULL, PRIMARY KEY (kind, name))",
    "CREATE TABLE der_schemas (kind TEXT NOT NULL, name TEXT NOT NULL, expression TEXT NOT NULL, PRIMARY KEY (kind, name))",
    """
    CREATE TABLE vir_schemas (
        kind TEXT NOT NULL,
        name TEXT NOT NULL,
        read_only INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (kind, name)
    )
    """,
    "CREATE TABLE tasks (key TEXT PRIMARY KEY, payload TEXT NOT NULL, updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP)",
    """
    CREATE TABLE executions (
        execution_id TEXT PRIMARY KEY,
        task_key TEXT NOT NULL,
        trigger TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        message TEXT,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX idx_executions_task ON executions(task_key, started_at)",
    """
    CREATE TABLE propagation_history (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id TEXT NOT NULL,
        entity_key TEXT NOT NULL,
        kind TEXT NOT NULL,
        resource TEXT NOT NULL,
        operation TEXT NOT NULL,
        conn_object_key TEXT,
        attributes TEXT NOT NULL,
        created_at TEXT,
        status TEXT NOT NULL,
        message TEXT,
        error_code TEXT
    )
    """,
    "CREATE INDEX idx_propagation_entity ON propagation_history(entity_key, seq)",
)

# i-й элемент переводит БД с версии i на i+1
MIGRATIONS: tuple[tuple[str, ...], ...] = (_V1,)

SCHEMA_VERSION = len(MIGRATIONS)


def ensure_schema(engine: SqliteEngine) -> int:
    """
    Назначение:
        Доводит БД до SCHEMA_VERSION, применяя недостающие миграции.

    Контракт:
        - Версия хранится в PRAGMA user_version; повторный вызов ничего не меняет.
        - Все миграции выполняются в одной транзакции.

    Выходные данные:
        Версия схемы после вызова.
    """
    with engine.transaction():
        current = engine.fetchone("PRAGMA user_version")[0]
        for statements in MIGRATIONS[current:]:
            for sql in statements:
                engine.execute(sql)
        if current < SCHEMA_VERSION:
            engine.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        return max(current, SCHEMA_VERSION)
