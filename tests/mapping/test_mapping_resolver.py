import pytest

from provisioning.domain.exceptions import MappingError, ValidationError
from provisioning.domain.mapping.derived import referenced_attrs, render_derived
from provisioning.domain.mapping.resolver import MappingResolver, apply_inbound, merge_inbound, new_entity_from
from provisioning.domain.mapping.validation import validate_provision, validate_resource
from provisioning.domain.models import (
    AnyTypeKind,
    AttrCategory,
    ConnectorConf,
    ConnectorObject,
    DerSchema,
    ExternalResource,
    MappingItem,
    MappingPurpose,
    Provision,
    SchemaCatalog,
    VirSchema,
)

from support import make_resource, make_user, user_provision

USER = AnyTypeKind.USER


def make_catalog() -> SchemaCatalog:
    catalog = SchemaCatalog()
    catalog.add_plain(USER, "firstname", "surname", "email", "department")
    catalog.add_derived(DerSchema("fullname", USER, "{firstname} {surname}"))
    catalog.add_virtual(VirSchema("virtualdata", USER))
    return catalog


def make_resolver(reader=None) -> MappingResolver:
    catalog = make_catalog()
    return MappingResolver(lambda: catalog, reader)


def test_render_derived_uses_first_values_and_empties_on_missing():
    assert render_derived("{a}.{b}", {"a": ["x", "y"], "b": ["z"]}) == ["x.z"]
    assert render_derived("{a}.{b}", {"a": ["x"]}) == []
    assert render_derived("{a}.{b}", {"a": ["x"], "b": [""]}) == []
    assert referenced_attrs("{a} {b} {a}") == ["a", "b"]


def test_outbound_keeps_value_order_and_renders_derived():
    resolver = make_resolver()
    user = make_user(email="first@x.com")
    user.plain_attrs["email"] = ["first@x.com", "second@x.com"]

    payload = resolver.resolve_outbound(user, make_resource("R1"))

    assert payload.key_attr == "username"
    assert payload.key_value == "jdoe"
    assert payload.attrs["mail"] == ["first@x.com", "second@x.com"]
    assert payload.attrs["cn"] == ["John Doe"]
    assert "email" not in payload.attrs


def test_outbound_virtual_prefers_mutation_values_then_cache():
    seen = []

    def reader(entity, schema):
        seen.append(schema)
        return ["cached@x.com"]

    resolver = make_resolver(reader)
    user = make_user(vir_attrs=("virtualdata",))
    resource = make_resource("R1")

    assert resolver.resolve_outbound(user, resource).attrs["email"] == ["cached@x.com"]
    assert resolver.resolve_outbound(user, resource, {"virtualdata": ["new@x.com"]}).attrs["email"] == ["new@x.com"]
    assert seen == ["virtualdata"]


def test_outbound_skips_uncached_or_unassigned_virtual():
    resolver = make_resolver(lambda entity, schema: None)
    assert "email" not in resolver.resolve_outbound(make_user(vir_attrs=("virtualdata",)), make_resource("R1")).attrs

    called = []
    resolver = make_resolver(lambda entity, schema: called.append(schema) or ["x"])
    assert "email" not in resolver.resolve_outbound(make_user(), make_resource("R1")).attrs
    assert called == []


def test_outbound_empty_key_is_mapping_error():
    resolver = make_resolver()
    user = make_user(name="")

    with pytest.raises(MappingError):
        resolver.resolve_outbound(user, make_resource("R1"))


def test_outbound_mandatory_empty_is_mapping_error():
    resolver = make_resolver()
    user = make_user()
    user.plain_attrs.pop("email")

    with pytest.raises(MappingError) as exc:
        resolver.resolve_outbound(user, make_resource("R1", user_provision(mandatory_email=True)))
    assert exc.value.attribute == "mail"


def test_outbound_without_provision_for_kind():
    resolver = make_resolver()
    resource = ExternalResource("R9", ConnectorConf("memory"), [])

    with pytest.raises(MappingError):
        resolver.resolve_outbound(make_user(), resource)


def test_purpose_filters_direction():
    resolver = make_resolver()
    provision = Provision(
        USER,
        [
            MappingItem("name", AttrCategory.FIELD, "username", conn_object_key=True),
            MappingItem("firstname", AttrCategory.PLAIN, "givenName", purpose=MappingPurpose.SYNCHRONIZATION),
            MappingItem("surname", AttrCategory.PLAIN, "sn", purpose=MappingPurpose.PROPAGATION),
            MappingItem("email", AttrCategory.PLAIN, "mail", purpose=MappingPurpose.NONE),
        ],
    )
    payload = resolver.resolve_outbound(make_user(), make_resource("R1", provision))
    assert set(payload.attrs) == {"username", "sn"}

    record = ConnectorObject("jdoe", {"username": ["jdoe"], "givenName": ["Jo"], "sn": ["D"], "mail": ["m"]})
    inbound = resolver.resolve_inbound(record, provision)
    assert inbound.plain_attrs == {"firstname": ["Jo"]}
    assert inbound.fields == {"name": "jdoe"}


def test_inbound_collects_fields_plain_and_virtual():
    resolver = make_resolver()
    record = ConnectorObject(
        "jdoe",
        {"username": ["jdoe"], "givenName": ["John"], "mail": ["a@x.com", "b@x.com"], "email": ["v@x.com"], "cn": ["X"]},
    )

    inbound = resolver.resolve_inbound(record, user_provision())

    assert inbound.conn_object_key == "jdoe"
    assert inbound.fields == {"name": "jdoe"}
    assert inbound.plain_attrs == {"firstname": ["John"], "email": ["a@x.com", "b@x.com"]}
    assert inbound.vir_values == {"virtualdata": ["v@x.com"]}
    assert "fullname" not in inbound.plain_attrs


def test_apply_merge_and_new_entity():
    resolver = make_resolver()
    record = ConnectorObject("jdoe", {"username": ["jdoe"], "givenName": ["Johnny"], "mail": ["new@x.com"]})
    inbound = resolver.resolve_inbound(record, user_provision())

    user = make_user()
    assert apply_inbound(user, inbound) is True
    assert user.plain_attrs["firstname"] == ["Johnny"]
    assert apply_inbound(user, inbound) is False

    merged = make_user()
    assert merge_inbound(merged, inbound) is True
    assert merged.plain_attrs["firstname"] == ["John", "Johnny"]
    assert merged.plain_attrs["email"] == ["jdoe@x.com", "new@x.com"]

    created = new_entity_from(USER, inbound, realm="/staff", resource="R1")
    assert created.name == "jdoe"
    assert created.realm == "/staff"
    assert created.resources == ["R1"]
    assert created.key


def test_validate_provision_key_rules():
    catalog = make_catalog()
    no_key = Provision(USER, [MappingItem("firstname", AttrCategory.PLAIN, "givenName")])
    two_keys = Provision(
        USER,
        [
            MappingItem("name", AttrCategory.FIELD, "username", conn_object_key=True),
            MappingItem("email", AttrCategory.PLAIN, "mail", conn_object_key=True),
        ],
    )
    virtual_key = Provision(USER, [MappingItem("virtualdata", AttrCategory.VIRTUAL, "v", conn_object_key=True)])
    unknown = Provision(
        USER,
        [
            MappingItem("name", AttrCategory.FIELD, "username", conn_object_key=True),
            MappingItem("nickname", AttrCategory.PLAIN, "nick"),
        ],
    )

    for provision in (no_key, two_keys, virtual_key, unknown):
        with pytest.raises(MappingError):
            validate_provision(provision, catalog)


def test_validate_resource_rejects_duplicate_provision_and_empty_type():
    catalog = make_catalog()
    duplicate = ExternalResource("R1", ConnectorConf("memory"), [user_provision(), user_provision()])
    with pytest.raises(ValidationError):
        validate_resource(duplicate, catalog)

    with pytest.raises(ValidationError):
        validate_resource(ExternalResource("R1", ConnectorConf(""), [user_provision()]), catalog)
