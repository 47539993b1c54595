"""Tests for kinds, schema descriptors and schema validation."""

from datetime import date, datetime

import pytest

from pylitemodel import (App, AttributeSpec, Kind, MemoryStore, Model, SchemaDescriptor, SchemaError,
                         SchemaErrorReason, UsageError, kind_of, validate_schema, value_matches_kind)


def build(attributes, **overrides):
    return SchemaDescriptor.build("Thing", attributes=attributes, **overrides)


class TestKindOf:

    @pytest.mark.parametrize("value, kind", [
        ("a", Kind.STRING),
        (1, Kind.NUMBER),
        (1.5, Kind.NUMBER),
        (True, Kind.BOOLEAN),
        (None, Kind.NULL),
        ([1], Kind.ARRAY),
        ((1, 2), Kind.ARRAY),
        ({"a": 1}, Kind.OBJECT),
        (datetime(2024, 1, 1), Kind.DATE),
        (date(2024, 1, 1), Kind.DATE),
    ])
    def test_kind_of(self, value, kind):
        assert kind_of(value) is kind

    def test_bool_is_not_a_number(self):
        assert not value_matches_kind(False, "number")

    def test_any_matches_everything(self):
        assert value_matches_kind(object(), Kind.ANY)


class TestSchemaDescriptor:

    def test_defaults_come_from_model_name(self):
        descriptor = build({"a": "string"})
        assert descriptor.identity == "thing"
        assert descriptor.collection_name == "thing"
        assert descriptor.auto_id and descriptor.auto_created_at and descriptor.auto_updated_by
        assert descriptor.strict is True

    def test_camel_case_config_is_accepted(self):
        descriptor = SchemaDescriptor.build("Thing", {"autoId": False, "collectionName": "things"},
                                            {"a": "string"}, schema=False)
        assert descriptor.auto_id is False
        assert descriptor.collection_name == "things"
        assert descriptor.strict is False

    def test_overrides_win_over_app_config(self):
        descriptor = SchemaDescriptor.build("Thing", {"auto_id": False}, {"a": "string"}, autoId=True)
        assert descriptor.auto_id is True

    def test_config_attributes_are_merged_with_declared(self):
        descriptor = SchemaDescriptor.build("Thing", {"attributes": {"a": "string", "b": "number"}},
                                            {"b": "boolean"})
        assert descriptor.attributes == {"a": "string", "b": "boolean"}

    def test_unknown_knob_is_rejected(self):
        with pytest.raises(SchemaError) as exc_info:
            SchemaDescriptor.build("Thing", {"autoIdz": True}, {"a": "string"})
        assert exc_info.value.reason is SchemaErrorReason.INVALID_DESCRIPTOR

    def test_descriptor_is_frozen(self):
        descriptor = build({"a": "string"})
        with pytest.raises(Exception):
            descriptor.auto_id = False


class TestValidateSchema:

    def test_shorthand_is_normalized_in_place(self):
        descriptor = build({"name": "string", "tags": {"type": Kind.ARRAY}})
        validate_schema(descriptor)
        assert isinstance(descriptor.attributes["name"], AttributeSpec)
        assert descriptor.attributes["name"].kind is Kind.STRING
        assert descriptor.attributes["tags"].type == "array"

    def test_strict_schema_requires_attributes(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({}))
        assert exc_info.value.reason is SchemaErrorReason.MISSING_ATTRIBUTES

    def test_loose_schema_may_be_empty(self):
        assert validate_schema(build({}, schema=False)).attributes == {}

    def test_unknown_type(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({"a": "text"}))
        assert exc_info.value.reason is SchemaErrorReason.UNKNOWN_TYPE
        assert exc_info.value.attribute == "a"

    def test_missing_type_is_unknown(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({"a": {"required": True}}))
        assert exc_info.value.reason is SchemaErrorReason.UNKNOWN_TYPE

    def test_default_type_mismatch(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({"a": {"type": "number", "defaultsTo": "0"}}))
        assert exc_info.value.reason is SchemaErrorReason.DEFAULT_TYPE_MISMATCH

    def test_none_default_on_null_kind_is_valid(self):
        descriptor = validate_schema(build({"a": {"type": "null", "defaultsTo": None}}))
        assert descriptor.attributes["a"].has_default

    def test_any_accepts_any_default(self):
        validate_schema(build({"a": {"type": "any", "defaultsTo": [1, "x"]}}))

    def test_enum_must_be_a_list(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({"a": {"type": "string", "enum": "abc"}}))
        assert exc_info.value.reason is SchemaErrorReason.ENUM_NOT_ARRAY

    def test_enum_members_must_match_type(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({"a": {"type": "string", "enum": ["x", 1]}}))
        assert exc_info.value.reason is SchemaErrorReason.ENUM_TYPE_MISMATCH

    def test_default_must_be_in_enum(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({"a": {"type": "string", "enum": ["x", "y"], "defaultsTo": "z"}}))
        assert exc_info.value.reason is SchemaErrorReason.DEFAULT_NOT_IN_ENUM

    def test_malformed_attribute_options(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({"a": {"type": "string", "minLength": "short"}}))
        assert exc_info.value.reason is SchemaErrorReason.INVALID_DESCRIPTOR

    def test_attribute_must_be_name_or_mapping(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_schema(build({"a": 42}))
        assert exc_info.value.reason is SchemaErrorReason.INVALID_DESCRIPTOR

    def test_model_construction_validates_schema(self):
        with pytest.raises(SchemaError):
            Model.define("Thing", MemoryStore(), {"a": "text"})


class TestApp:

    def test_define_and_lookup(self):
        store = MemoryStore()
        app = App(store, config={"autoCreatedBy": False})
        model = app.define("Task", {"title": "string"})
        assert app["Task"] is model
        assert model.store is store
        assert model.descriptor.auto_created_by is False
        assert app.list_model_names() == ["Task"]

    def test_duplicate_definition(self):
        app = App(MemoryStore())
        app.define("Task", {"title": "string"})
        with pytest.raises(SchemaError):
            app.define("Task", {"title": "string"})

    def test_unknown_model(self):
        with pytest.raises(UsageError):
            App(MemoryStore()).model("Nope")
