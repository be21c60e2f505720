import threading

import pytest

from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import ConnectorError, NotFoundError, ValidationError
from provisioning.domain.models import AnyEntity
from provisioning.domain.plugins.actions import PushActions
from provisioning.domain.propagation_models import (
    Outcome,
    PropagationTaskExecStatus,
    ResourceOperation,
    derive_outcome,
)
from provisioning.usecases.provisioning_manager import EntityPatch

from support import GROUP, add_resources, make_app, make_user, seed_schemas


class SkipResourceActions(PushActions):
    def __init__(self, skipped: str):
        self.skipped = skipped
        self.after: list[tuple[str, PropagationTaskExecStatus]] = []

    def before_propagation(self, entity, resource):
        return None if resource == self.skipped else entity

    def after_propagation(self, entity, resource, status):
        self.after.append((resource, status.status))


class RaisingActions(PushActions):
    def __init__(self, before_on: str | None = None, after_on: str | None = None):
        self.before_on = before_on
        self.after_on = after_on
        self.after: list[str] = []

    def before_propagation(self, entity, resource):
        if resource == self.before_on:
            raise RuntimeError(f"cannot prepare {resource}")
        return entity

    def after_propagation(self, entity, resource, status):
        self.after.append(resource)
        if resource == self.after_on:
            raise RuntimeError(f"audit sink down for {resource}")


def test_derive_outcome():
    assert derive_outcome(succeeded=3, failed=0) == Outcome.SUCCESS
    assert derive_outcome(succeeded=0, failed=0) == Outcome.SUCCESS
    assert derive_outcome(succeeded=0, failed=2) == Outcome.FAILURE
    assert derive_outcome(succeeded=1, failed=1) == Outcome.PARTIAL


def test_create_propagates_to_each_resource_in_order(seeded_app, gateway):
    user = make_user(resources=("R2", "R1", "R3"))

    result = seeded_app.manager.create(user)

    assert [s.resource for s in result.report.statuses] == ["R2", "R1", "R3"]
    assert all(s.operation == ResourceOperation.CREATE for s in result.report.statuses)
    assert result.report.outcome == Outcome.SUCCESS
    for resource in ("R1", "R2", "R3"):
        assert gateway.records[resource]["jdoe"]["givenName"] == ["John"]
        assert gateway.records[resource]["jdoe"]["cn"] == ["John Doe"]


def test_one_failing_resource_gives_partial_and_keeps_commit(seeded_app, gateway):
    gateway.failures["R2"] = ConnectorError("refused", resource="R2")

    result = seeded_app.manager.create(make_user(resources=("R1", "R2", "R3")))

    by_resource = result.report.by_resource()
    assert by_resource["R1"].ok and by_resource["R3"].ok
    assert by_resource["R2"].status == PropagationTaskExecStatus.FAILURE
    assert by_resource["R2"].error_code == ErrorCode.CONNECTOR_ERROR.value
    assert result.report.outcome == Outcome.PARTIAL
    assert seeded_app.store.read("u1") is not None


def test_group_resources_follow_direct_ones_without_duplicates(seeded_app, gateway):
    seeded_app.store.save(AnyEntity(key="g1", kind=GROUP, name="staff", resources=["R3", "R1"]))
    user = make_user(resources=("R1",), memberships=("g1",))

    result = seeded_app.manager.create(user)

    assert [s.resource for s in result.report.statuses] == ["R1", "R3"]


def test_groups_do_not_inherit_resources(seeded_app):
    seeded_app.store.save(AnyEntity(key="g1", kind=GROUP, name="staff", resources=["R3"]))
    group = AnyEntity(key="g2", kind=GROUP, name="ops", resources=["R1"], memberships=["g1"])

    result = seeded_app.manager.create(group)

    assert [s.resource for s in result.report.statuses] == ["R1"]


def test_timeout_marks_slow_resource_failed(tmp_path, gateway):
    app = make_app(tmp_path, gateway, propagation_timeout_seconds=0.2)
    try:
        seed_schemas(app)
        add_resources(app, "R1", "R2")
        gateway.delays["R2"] = 1.0

        result = app.manager.create(make_user(resources=("R1", "R2")))

        by_resource = result.report.by_resource()
        assert by_resource["R1"].ok
        assert by_resource["R2"].status == PropagationTaskExecStatus.FAILURE
        assert by_resource["R2"].error_code == ErrorCode.TIMEOUT.value
        assert result.report.outcome == Outcome.PARTIAL
    finally:
        app.close()


def test_queued_resources_get_their_own_timeout(tmp_path, gateway):
    app = make_app(tmp_path, gateway, propagation_pool_size=1, propagation_timeout_seconds=1.0)
    try:
        seed_schemas(app)
        add_resources(app, "R1", "R2")
        gateway.delays["R1"] = 0.6
        gateway.delays["R2"] = 0.6

        result = app.manager.create(make_user(resources=("R1", "R2")))

        assert [s.status for s in result.report.statuses] == [PropagationTaskExecStatus.SUCCESS] * 2
        assert result.report.outcome == Outcome.SUCCESS
        assert "jdoe" in gateway.records["R2"]
    finally:
        app.close()


def test_queued_resource_behind_a_hung_call_times_out_without_dispatch(tmp_path, gateway):
    app = make_app(tmp_path, gateway, propagation_pool_size=1, propagation_timeout_seconds=0.2)
    try:
        seed_schemas(app)
        add_resources(app, "R1", "R2")
        gateway.delays["R1"] = 1.0

        result = app.manager.create(make_user(resources=("R1", "R2")))

        assert [s.error_code for s in result.report.statuses] == [ErrorCode.TIMEOUT.value] * 2
        assert "pool busy" in result.report.statuses[1].message
        assert gateway.calls_for("create", "R2") == []
    finally:
        app.close()


def test_removed_resource_gets_delete(seeded_app, gateway):
    seeded_app.manager.create(make_user(resources=("R1", "R2")))

    result = seeded_app.manager.update("u1", EntityPatch(remove_resources=["R2"]))

    assert [(s.resource, s.operation) for s in result.report.statuses] == [
        ("R1", ResourceOperation.UPDATE),
        ("R2", ResourceOperation.DELETE),
    ]
    assert "jdoe" not in gateway.records["R2"]
    assert seeded_app.store.read("u1").resources == ["R1"]


def test_update_of_absent_object_creates_it(seeded_app, gateway):
    seeded_app.store.save(make_user(resources=("R1",)))

    result = seeded_app.manager.update("u1", EntityPatch(plain_attrs={"surname": ["Smith"]}))

    status = result.report.statuses[0]
    assert status.ok
    assert status.operation == ResourceOperation.CREATE
    assert gateway.records["R1"]["jdoe"]["sn"] == ["Smith"]


def test_delete_of_absent_object_is_success(seeded_app, gateway):
    seeded_app.store.save(make_user(resources=("R1",)))

    result = seeded_app.manager.delete("u1")

    assert result.report.statuses[0].ok
    assert result.report.statuses[0].operation == ResourceOperation.DELETE
    assert seeded_app.store.read("u1") is None
    assert gateway.calls_for("delete", "R1") == [("delete", "R1", "jdoe")]


def test_mapping_error_is_a_per_resource_status(seeded_app, gateway):
    user = make_user(name="", resources=("R1", "R2"))

    result = seeded_app.manager.create(user)

    assert [s.error_code for s in result.report.statuses] == [ErrorCode.MAPPING_ERROR.value] * 2
    assert result.report.outcome == Outcome.FAILURE
    assert gateway.calls == []


def test_unknown_resource_is_not_found_status(seeded_app):
    result = seeded_app.manager.create(make_user(resources=("R1", "GONE")))

    by_resource = result.report.by_resource()
    assert by_resource["R1"].ok
    assert by_resource["GONE"].error_code == ErrorCode.NOT_FOUND.value


def test_cancelled_dispatch_is_not_attempted(seeded_app, gateway):
    cancel = threading.Event()
    cancel.set()
    user = seeded_app.store.save(make_user(resources=("R1", "R2")))

    report = seeded_app.coordinator.propagate(user, ResourceOperation.CREATE, cancel_event=cancel)

    assert [s.status for s in report.statuses] == [PropagationTaskExecStatus.NOT_ATTEMPTED] * 2
    assert gateway.calls == []


def test_explicit_targets_replace_selection(seeded_app, gateway):
    user = seeded_app.store.save(make_user(resources=("R1",)))

    report = seeded_app.coordinator.propagate(user, ResourceOperation.CREATE, resources=["R3", "R3"])

    assert [s.resource for s in report.statuses] == ["R3"]
    assert "jdoe" in gateway.records["R3"]


def test_push_actions_can_skip_a_resource(seeded_app, gateway):
    actions = SkipResourceActions("R2")
    user = seeded_app.store.save(make_user(resources=("R1", "R2")))

    report = seeded_app.coordinator.propagate(user, ResourceOperation.CREATE, actions=[actions])

    assert [s.status for s in report.statuses] == [
        PropagationTaskExecStatus.SUCCESS,
        PropagationTaskExecStatus.NOT_ATTEMPTED,
    ]
    assert actions.after == [
        ("R1", PropagationTaskExecStatus.SUCCESS),
        ("R2", PropagationTaskExecStatus.NOT_ATTEMPTED),
    ]
    assert "R2" not in gateway.records


def test_history_keeps_task_and_status(seeded_app, gateway):
    gateway.failures["R2"] = ConnectorError("refused", resource="R2")
    seeded_app.manager.create(make_user(resources=("R1", "R2")))

    history = seeded_app.history.list_for_entity("u1")

    assert [(task.resource, status.status) for task, status in history] == [
        ("R1", PropagationTaskExecStatus.SUCCESS),
        ("R2", PropagationTaskExecStatus.FAILURE),
    ]
    assert history[0][0].conn_object_key == "jdoe"
    assert history[0][0].attributes["mail"] == ["jdoe@x.com"]


def test_manager_rejects_duplicate_and_missing(seeded_app):
    seeded_app.manager.create(make_user())

    with pytest.raises(ValidationError):
        seeded_app.manager.create(make_user())
    with pytest.raises(NotFoundError):
        seeded_app.manager.update("missing", EntityPatch())
    with pytest.raises(NotFoundError):
        seeded_app.manager.delete("missing")


def test_membership_change_invalidates_entity_cache(seeded_app, gateway):
    seeded_app.store.save(AnyEntity(key="g1", kind=GROUP, name="staff", resources=["R2"]))
    gateway.seed("R1", "username", {"username": "jdoe", "email": "a@x.com"})
    seeded_app.store.save(make_user(resources=("R1",), vir_attrs=("virtualdata",)))
    seeded_app.virattr_service.read_virtual_attribute("u1", "virtualdata")
    assert seeded_app.cache.size() == 1

    seeded_app.manager.update("u1", EntityPatch(add_memberships=["g1"]))

    assert seeded_app.cache.size() == 0
    assert seeded_app.store.read("u1").memberships == ["g1"]


def test_failing_before_action_fails_only_its_resource(seeded_app, gateway):
    actions = RaisingActions(before_on="R2")
    user = seeded_app.store.save(make_user(resources=("R1", "R2", "R3")))

    report = seeded_app.coordinator.propagate(user, ResourceOperation.CREATE, actions=[actions])

    by_resource = report.by_resource()
    assert by_resource["R1"].ok and by_resource["R3"].ok
    assert by_resource["R2"].status == PropagationTaskExecStatus.FAILURE
    assert by_resource["R2"].error_code == ErrorCode.UNEXPECTED_ERROR.value
    assert report.outcome == Outcome.PARTIAL
    assert gateway.calls_for("create", "R2") == []


def test_failing_after_action_does_not_lose_the_report(seeded_app, gateway):
    actions = RaisingActions(after_on="R1")
    user = seeded_app.store.save(make_user(resources=("R1", "R2")))

    report = seeded_app.coordinator.propagate(user, ResourceOperation.CREATE, actions=[actions])

    assert [s.ok for s in report.statuses] == [True, True]
    assert actions.after == ["R1", "R2"]
    assert len(seeded_app.history.list_for_entity("u1")) == 2


def test_history_failure_does_not_lose_the_report(seeded_app, gateway, monkeypatch):
    def broken_append(task, status):
        raise RuntimeError("history db locked")

    monkeypatch.setattr(seeded_app.history, "append", broken_append)

    result = seeded_app.manager.create(make_user(resources=("R1", "R2")))

    assert result.report.outcome == Outcome.SUCCESS
    assert "jdoe" in gateway.records["R1"] and "jdoe" in gateway.records["R2"]
    assert seeded_app.store.read("u1") is not None


def test_not_attempted_resources_do_not_count_as_failures(seeded_app, gateway):
    user = seeded_app.store.save(make_user(resources=("R1", "R2", "R3")))

    skipped = seeded_app.coordinator.propagate(user, ResourceOperation.CREATE, actions=[SkipResourceActions("R2")])

    assert skipped.outcome == Outcome.SUCCESS

    gateway.failures["R1"] = ConnectorError("refused", resource="R1")
    mixed = seeded_app.coordinator.propagate(
        user, ResourceOperation.UPDATE, resources=["R1", "R2"], actions=[SkipResourceActions("R2")]
    )

    assert [s.status for s in mixed.statuses] == [
        PropagationTaskExecStatus.FAILURE,
        PropagationTaskExecStatus.NOT_ATTEMPTED,
    ]
    assert mixed.outcome == Outcome.FAILURE

    cancel = threading.Event()
    cancel.set()
    assert seeded_app.coordinator.propagate(user, ResourceOperation.UPDATE, cancel_event=cancel).outcome == Outcome.SUCCESS
