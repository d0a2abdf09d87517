from app.api.schemas.datasets import SchemaConfig
from app.domain.imports.schema_comparison import compare_schemas, decide_approval


def _schema(properties, required=()):
    return {"type": "object", "properties": properties, "required": list(required)}


BASE = _schema(
    {
        "title": {"type": "string"},
        "attendance": {"type": "integer"},
        "kind": {"type": "string", "enum": ["talk", "concert"]},
        "notes": {"type": ["string", "null"]},
    },
    required=["title", "attendance"],
)


def _types(comparison):
    return sorted((change.type, change.path) for change in comparison.changes)


def test_identical_schemas_have_no_changes():
    comparison = compare_schemas(BASE, BASE)
    assert not comparison.has_changes
    assert not comparison.is_breaking


def test_new_field_is_not_breaking():
    new = _schema({**BASE["properties"], "room": {"type": "string"}}, BASE["required"])
    comparison = compare_schemas(BASE, new)
    assert _types(comparison) == [("new_field", "room")]
    assert not comparison.is_breaking


def test_removed_required_field_is_breaking_and_optional_is_warning():
    props = dict(BASE["properties"])
    del props["title"]
    del props["notes"]
    comparison = compare_schemas(BASE, _schema(props, ["attendance"]))
    by_path = {change.path: change for change in comparison.changes}
    assert by_path["title"].breaking is True
    assert by_path["notes"].breaking is False
    assert by_path["notes"].severity == "warning"


def test_type_change_is_breaking_but_integer_to_number_widens():
    widened = _schema({**BASE["properties"], "attendance": {"type": "number"}}, BASE["required"])
    changed = _schema({**BASE["properties"], "attendance": {"type": "string"}}, BASE["required"])
    assert _types(compare_schemas(BASE, widened)) == [("type_widened", "attendance")]
    assert compare_schemas(BASE, changed).is_breaking


def test_enum_change_is_reported_without_breaking():
    new = _schema(
        {**BASE["properties"], "kind": {"type": "string", "enum": ["talk", "workshop"]}},
        BASE["required"],
    )
    comparison = compare_schemas(BASE, new)
    [change] = comparison.changes
    assert change.type == "enum_change"
    assert change.details == {"added": ["workshop"], "removed": ["concert"]}
    assert not comparison.is_breaking


def test_rename_suggested_for_similar_field():
    old = _schema({"start_date": {"type": "string"}, "title": {"type": "string"}}, ["start_date", "title"])
    new = _schema({"startDate": {"type": "string"}, "title": {"type": "string"}}, ["startDate", "title"])
    comparison = compare_schemas(old, new)
    [suggestion] = comparison.transform_suggestions
    assert (suggestion.from_field, suggestion.to_field) == ("startDate", "start_date")
    assert suggestion.high_confidence
    assert suggestion.to_transform()["type"] == "rename"


def test_unrelated_fields_are_not_paired():
    old = _schema({"title": {"type": "string"}}, ["title"])
    new = _schema({"attendance": {"type": "integer"}}, ["attendance"])
    assert compare_schemas(old, new).transform_suggestions == []


def test_unchanged_schema_still_follows_dataset_gate():
    unchanged = compare_schemas(BASE, BASE)
    assert decide_approval(unchanged, SchemaConfig()).requires_approval
    assert decide_approval(unchanged, SchemaConfig(auto_approve_non_breaking=True)).outcome == "approve"

    locked = decide_approval(unchanged, SchemaConfig(locked=True, auto_approve_non_breaking=True))
    assert locked.requires_approval
    assert locked.reason == "Dataset schema is locked"


def test_default_config_requires_approval_for_changes():
    decision = decide_approval(compare_schemas(None, BASE), SchemaConfig(), is_initial=True)
    assert decision.requires_approval


def test_auto_approve_non_breaking():
    config = SchemaConfig(auto_approve_non_breaking=True)
    assert decide_approval(compare_schemas(None, BASE), config).outcome == "approve"


def test_breaking_changes_always_need_approval_without_mode():
    config = SchemaConfig(auto_approve_non_breaking=True)
    changed = _schema({**BASE["properties"], "attendance": {"type": "string"}}, BASE["required"])
    decision = decide_approval(compare_schemas(BASE, changed), config)
    assert decision.requires_approval
    assert "Breaking" in decision.reason


def test_auto_grow_disabled_gates_new_fields():
    config = SchemaConfig(auto_approve_non_breaking=True, auto_grow=False)
    new = _schema({**BASE["properties"], "room": {"type": "string"}}, BASE["required"])
    assert decide_approval(compare_schemas(BASE, new), config).requires_approval


def test_modes():
    new = _schema({**BASE["properties"], "room": {"type": "string"}}, BASE["required"])
    comparison = compare_schemas(BASE, new)
    assert decide_approval(comparison, processing_mode="strict").failed
    assert decide_approval(comparison, processing_mode="additive").outcome == "approve"
    assert decide_approval(comparison, processing_mode="flexible").outcome == "approve"
    assert decide_approval(compare_schemas(None, BASE), processing_mode="strict", is_initial=True).outcome == "approve"


def test_job_mode_overrides_dataset_mode():
    config = SchemaConfig(processing_mode="flexible")
    new = _schema({**BASE["properties"], "room": {"type": "string"}}, BASE["required"])
    decision = decide_approval(compare_schemas(BASE, new), config, "strict")
    assert decision.failed
    assert decision.mode == "strict"


def test_additive_mode_gates_high_confidence_rename():
    old = _schema({"start_date": {"type": "string"}}, [])
    new = _schema({"startDate": {"type": "string"}}, [])
    decision = decide_approval(compare_schemas(old, new), processing_mode="additive")
    assert decision.requires_approval
