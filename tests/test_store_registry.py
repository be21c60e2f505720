import sqlite3

import pytest

from provisioning.domain.exceptions import ValidationError
from provisioning.domain.models import AnyEntity
from provisioning.domain.plugins.registry import (
    PluginKind,
    create_plugin,
    is_registered,
    list_plugins,
    register,
    unregister,
)
from provisioning.domain.task_models import ExecStatus, TaskExecution, TriggerSource
from provisioning.infra.store.db import openDb
from provisioning.infra.store.schema import SCHEMA_VERSION, ensure_schema
from provisioning.infra.store.sqlite_engine import SqliteEngine

from support import GROUP, USER, make_user


def test_saved_entity_is_a_copy(app):
    user = make_user()
    saved = app.store.save(user)

    saved.plain_attrs["firstname"].append("Mutated")
    user.resources.append("R9")

    stored = app.store.read("u1")
    assert stored.plain_attrs["firstname"] == ["John"]
    assert stored.resources == ["R1"]


def test_search_orders_by_name_and_filters_realm(app):
    app.store.save(make_user("u1", "zed", realm="/eu"))
    app.store.save(make_user("u2", "amy", realm="/eu/de"))
    app.store.save(make_user("u3", "bob", realm="/europe"))
    app.store.save(AnyEntity(key="g1", kind=GROUP, name="staff", realm="/eu"))

    assert [e.name for e in app.store.search(USER)] == ["amy", "bob", "zed"]
    assert [e.name for e in app.store.search(USER, "/eu")] == ["amy", "zed"]
    assert [e.key for e in app.store.search(GROUP, "/eu/")] == ["g1"]


def test_find_by_attr_uses_fields_and_plain_values(app):
    app.store.save(make_user("u1", "jdoe", email="shared@x.com"))
    app.store.save(make_user("u2", "kim", email="shared@x.com"))

    assert [e.key for e in app.store.find_by_attr(USER, "name", "kim")] == ["u2"]
    assert [e.key for e in app.store.find_by_attr(USER, "email", "shared@x.com")] == ["u1", "u2"]
    assert app.store.find_by_attr(USER, "email", "SHARED@x.com") == []
    assert app.store.find_by_attr(GROUP, "name", "kim") == []


def test_resave_replaces_attribute_index(app):
    app.store.save(make_user("u1", "jdoe", email="old@x.com"))
    app.store.save(make_user("u1", "jdoe", email="new@x.com"))

    assert app.store.find_by_attr(USER, "email", "old@x.com") == []
    assert app.store.count(USER) == 1


def test_delete_and_count(app):
    app.store.save(make_user("u1", "jdoe"))
    app.store.save(AnyEntity(key="g1", kind=GROUP, name="staff"))

    assert app.store.count() == 2
    assert app.store.delete("u1").name == "jdoe"
    assert app.store.delete("u1") is None
    assert app.store.count(USER) == 0
    assert app.store.find_by_attr(USER, "email", "jdoe@x.com") == []


def test_execution_history_is_append_only(app):
    execution = TaskExecution(
        execution_id="e1",
        task_key="t1",
        trigger=TriggerSource.MANUAL,
        started_at="2026-01-01T00:00:00Z",
        status=ExecStatus.SUCCESS,
    )
    app.execution_repo.append(execution)

    with pytest.raises(sqlite3.IntegrityError):
        app.execution_repo.append(execution)
    assert app.execution_repo.get("e1").status == ExecStatus.SUCCESS
    assert app.execution_repo.get("missing") is None


def test_schema_is_created_once(tmp_path):
    engine = SqliteEngine(openDb(str(tmp_path / "db" / "p.sqlite3")))
    try:
        assert ensure_schema(engine) == SCHEMA_VERSION
        assert ensure_schema(engine) == SCHEMA_VERSION
    finally:
        engine.close()


def test_transaction_rolls_back_on_error(app):
    with pytest.raises(RuntimeError):
        with app.engine.transaction():
            app.store.save(make_user("u1", "jdoe"))
            raise RuntimeError("boom")

    assert app.store.read("u1") is None


def test_registry_register_and_create():
    class Marker:
        def __init__(self, conf=None):
            self.conf = conf

    register(PluginKind.CORRELATION_RULE, "test-marker", Marker)
    try:
        register(PluginKind.CORRELATION_RULE, "test-marker", Marker)
        assert is_registered(PluginKind.CORRELATION_RULE, "test-marker")
        assert "test-marker" in list_plugins(PluginKind.CORRELATION_RULE)
        assert create_plugin(PluginKind.CORRELATION_RULE, "test-marker", {"a": 1}).conf == {"a": 1}

        with pytest.raises(ValueError):
            register(PluginKind.CORRELATION_RULE, "test-marker", lambda conf=None: None)
    finally:
        unregister(PluginKind.CORRELATION_RULE, "test-marker")

    assert not is_registered(PluginKind.CORRELATION_RULE, "test-marker")
    with pytest.raises(ValidationError):
        create_plugin(PluginKind.CORRELATION_RULE, "test-marker")


def test_builtin_plugins_are_registered(app):
    assert list_plugins(PluginKind.CONNECTOR) == ["csv", "db", "rest"]
    assert "plain-attrs" in list_plugins(PluginKind.CORRELATION_RULE)
    assert {"logging", "lowercase-name", "merge-keep-internal"} <= set(list_plugins(PluginKind.PULL_ACTIONS))
    assert "logging" in list_plugins(PluginKind.PUSH_ACTIONS)
