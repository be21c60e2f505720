import pytest

from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import MatchingAmbiguityError
from provisioning.domain.matching.models import MatchAction
from provisioning.domain.models import AttrCategory, ConnectorObject, MappingItem, Provision
from provisioning.domain.task_models import MatchingRule, ProvisioningTask, TaskType, UnmatchingRule

from support import USER, make_user, user_provision


def pull_task(**overrides) -> ProvisioningTask:
    values = {"key": "pull-r1", "task_type": TaskType.PULL, "resource": "R1", "kind": USER}
    values.update(overrides)
    return ProvisioningTask(**values)


def record(name: str, email: str | None = None, deleted: bool = False) -> ConnectorObject:
    attrs = {"username": [name], "givenName": ["Rec"]}
    if email:
        attrs["mail"] = [email]
    return ConnectorObject(uid=name, attrs=attrs, deleted=deleted)


def test_match_on_conn_object_key_updates(seeded_app):
    seeded_app.store.save(make_user("u1", "jdoe"))

    decision = seeded_app.matching.match_pull(record("jdoe"), pull_task(), user_provision())

    assert decision.action == MatchAction.UPDATE
    assert decision.candidate.key == "u1"
    assert decision.inbound.plain_attrs["firstname"] == ["Rec"]


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"matching_rule": MatchingRule.IGNORE}, MatchAction.IGNORE),
        ({"matching_rule": MatchingRule.MERGE}, MatchAction.MERGE),
        ({"perform_update": False}, MatchAction.SKIP),
    ],
)
def test_matching_rule_on_match(seeded_app, overrides, expected):
    seeded_app.store.save(make_user("u1", "jdoe"))

    decision = seeded_app.matching.match_pull(record("jdoe"), pull_task(**overrides), user_provision())

    assert decision.action == expected


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, MatchAction.PROVISION),
        ({"unmatching_rule": UnmatchingRule.IGNORE}, MatchAction.IGNORE),
        ({"perform_create": False}, MatchAction.SKIP),
    ],
)
def test_unmatching_rule_without_match(seeded_app, overrides, expected):
    decision = seeded_app.matching.match_pull(record("nobody"), pull_task(**overrides), user_provision())

    assert decision.action == expected
    assert decision.candidate is None


def test_assign_uses_secondary_rule(seeded_app):
    seeded_app.store.save(make_user("u9", "johnny", email="shared@x.com"))
    task = pull_task(
        unmatching_rule=UnmatchingRule.ASSIGN,
        assign_correlation_rule="plain-attrs",
        assign_correlation_conf={"schemas": ["email"]},
    )

    found = seeded_app.matching.match_pull(record("jdoe", "shared@x.com"), task, user_provision())
    missing = seeded_app.matching.match_pull(record("jdoe", "other@x.com"), task, user_provision())

    assert found.action == MatchAction.ASSIGN
    assert found.candidate.key == "u9"
    assert missing.error_code == ErrorCode.ASSIGN_TARGET_NOT_FOUND.value
    assert missing.failed


def test_assign_without_secondary_rule_fails_the_record(seeded_app):
    decision = seeded_app.matching.match_pull(
        record("jdoe"), pull_task(unmatching_rule=UnmatchingRule.ASSIGN), user_provision()
    )

    assert decision.action == MatchAction.ASSIGN
    assert decision.error_code == ErrorCode.ASSIGN_TARGET_NOT_FOUND.value


def test_ambiguous_candidates_raise(seeded_app):
    seeded_app.store.save(make_user("u1", "a", email="dup@x.com"))
    seeded_app.store.save(make_user("u2", "b", email="dup@x.com"))
    task = pull_task(correlation_rule="plain-attrs", correlation_conf={"schemas": ["email"]})

    with pytest.raises(MatchingAmbiguityError) as exc:
        seeded_app.matching.match_pull(record("c", "dup@x.com"), task, user_provision())
    assert sorted(exc.value.candidates) == ["u1", "u2"]
    assert exc.value.code == ErrorCode.MATCH_AMBIGUOUS.value


def test_deleted_record_policies(seeded_app):
    seeded_app.store.save(make_user("u1", "jdoe"))
    gone = record("jdoe", deleted=True)

    assert seeded_app.matching.match_pull(gone, pull_task(), user_provision()).action == MatchAction.SKIP
    assert (
        seeded_app.matching.match_pull(gone, pull_task(perform_delete=True), user_provision()).action
        == MatchAction.DELETE
    )
    assert (
        seeded_app.matching.match_pull(record("ghost", deleted=True), pull_task(perform_delete=True), user_provision()).action
        == MatchAction.IGNORE
    )


def test_derived_conn_object_key_correlates_by_rendering(seeded_app):
    provision = Provision(
        USER,
        [
            MappingItem("fullname", AttrCategory.DERIVED, "cn", conn_object_key=True),
            MappingItem("email", AttrCategory.PLAIN, "mail"),
        ],
    )
    seeded_app.store.save(make_user("u1", "jdoe"))
    found = ConnectorObject(uid="John Doe", attrs={"cn": ["John Doe"], "mail": ["j@x.com"]})

    decision = seeded_app.matching.match_pull(found, pull_task(), provision)

    assert decision.action == MatchAction.UPDATE
    assert decision.candidate.key == "u1"


def test_push_matching_reads_the_resource(seeded_app, gateway):
    resource = seeded_app.resources.read_resource("R1")
    push = ProvisioningTask(key="push-r1", task_type=TaskType.PUSH, resource="R1", kind=USER)
    gateway.seed("R1", "username", {"username": "jdoe"})

    assert seeded_app.matching.match_push(make_user("u1", "jdoe"), push, resource).action == MatchAction.UPDATE
    assert seeded_app.matching.match_push(make_user("u2", "kim"), push, resource).action == MatchAction.PROVISION

    push.unmatching_rule = UnmatchingRule.ASSIGN
    assert seeded_app.matching.match_push(make_user("u2", "kim"), push, resource).action == MatchAction.ASSIGN
    push.matching_rule = MatchingRule.IGNORE
    assert seeded_app.matching.match_push(make_user("u1", "jdoe"), push, resource).action == MatchAction.IGNORE
