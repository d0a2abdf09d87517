from app.domain.imports.schema_builder import (
    ProgressiveSchemaBuilder,
    SchemaBuilderConfig,
    get_value_type,
)


def _build(*batches, **config):
    builder = ProgressiveSchemaBuilder(config=SchemaBuilderConfig(**config))
    for batch in batches:
        builder.process_batch(batch)
    builder.finalize()
    return builder


def test_value_types():
    assert get_value_type(3) == "integer"
    assert get_value_type(3.0) == "integer"
    assert get_value_type(3.5) == "number"
    assert get_value_type(True) == "boolean"
    assert get_value_type("2024-01-15") == "date"
    assert get_value_type("hello") == "string"
    assert get_value_type(None) == "null"


def test_schema_types_required_and_nullable():
    builder = _build(
        [{"title": "A", "count": 1, "note": None}, {"title": "B", "count": 2.5, "note": "x"}],
    )
    schema = builder.get_schema()
    assert schema["properties"]["title"]["type"] == "string"
    assert schema["properties"]["count"]["type"] == "number"
    assert schema["properties"]["note"]["type"] == ["string", "null"]
    assert schema["required"] == ["title", "count"]


def test_nested_objects_become_nested_properties():
    builder = _build([{"venue": {"name": "Hall", "city": "Oslo"}}])
    venue = builder.get_schema()["properties"]["venue"]
    assert venue["type"] == "object"
    assert set(venue["properties"]) == {"name", "city"}


def test_enum_detected_only_after_finalize():
    builder = ProgressiveSchemaBuilder(config=SchemaBuilderConfig(enum_threshold=3))
    builder.process_batch([{"kind": "talk"}, {"kind": "concert"}, {"kind": "talk"}])
    assert builder.state.field_stats["kind"].is_enum_candidate is False
    builder.finalize()
    assert builder.get_schema()["properties"]["kind"]["enum"] == ["talk", "concert"]


def test_all_distinct_values_are_not_enum():
    builder = _build([{"code": "a"}, {"code": "b"}, {"code": "c"}])
    assert "enum" not in builder.get_schema()["properties"]["code"]


def test_snapshot_restores_identical_builder():
    builder = ProgressiveSchemaBuilder()
    builder.process_batch([{"title": "A", "n": 1}])
    restored = ProgressiveSchemaBuilder.from_snapshot(builder.to_snapshot())
    restored.process_batch([{"title": "B", "n": 2}])
    builder.process_batch([{"title": "B", "n": 2}])
    assert restored.to_snapshot()["field_stats"] == builder.to_snapshot()["field_stats"]
    assert restored.state.record_count == 2


def test_new_fields_bump_version():
    builder = ProgressiveSchemaBuilder()
    assert builder.process_batch([{"a": 1}]) is True
    assert builder.process_batch([{"a": 2}]) is False
    assert builder.process_batch([{"a": 3, "b": "x"}]) is True
    assert builder.state.version == 2


def test_id_fields_and_type_conflicts():
    builder = _build([{"event_id": 1, "mixed": "x"}, {"event_id": 2, "mixed": True}])
    assert builder.state.detected_id_fields == ["event_id"]
    assert [c.path for c in builder.state.type_conflicts] == ["mixed"]


def test_field_metadata_reports_occurrence():
    builder = _build([{"a": 1, "b": 2}, {"a": 3}])
    metadata = builder.get_field_metadata()
    assert metadata["a"]["occurrence_percent"] == 100.0
    assert metadata["b"]["occurrence_percent"] == 50.0
    assert metadata["a"]["numeric_stats"]["avg"] == 2.0
