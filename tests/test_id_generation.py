import pytest

from app.api.schemas.datasets import IdStrategyConfig
from app.domain.imports.id_generation import UniqueIdError, generate_unique_id, sanitize_external_id


def test_auto_id_ignores_key_order():
    first = generate_unique_id({"a": 1, "b": "x"})
    second = generate_unique_id({"b": "x", "a": 1})
    assert first == second
    assert first.startswith("auto:")
    assert len(first) == len("auto:") + 16


def test_auto_id_changes_with_content():
    assert generate_unique_id({"a": 1}) != generate_unique_id({"a": 2})


def test_external_id_sanitized():
    strategy = IdStrategyConfig(type="external", external_id_path="ref")
    assert generate_unique_id({"ref": "  EV 42 "}, strategy) == "ext:EV_42"


def test_external_id_from_nested_path():
    strategy = IdStrategyConfig(type="external", external_id_path="meta.id")
    assert generate_unique_id({"meta": {"id": 7}}, strategy) == "ext:7"


def test_missing_external_id_raises():
    strategy = IdStrategyConfig(type="external", external_id_path="ref")
    with pytest.raises(UniqueIdError):
        generate_unique_id({"ref": "  "}, strategy)


def test_unsupported_characters_rejected():
    with pytest.raises(UniqueIdError):
        sanitize_external_id("a/b")


def test_computed_id_uses_only_designated_fields():
    strategy = IdStrategyConfig(type="computed", computed_id_fields=["name", "date"])
    first = generate_unique_id({"name": "Gala", "date": "2024-01-01", "notes": "x"}, strategy)
    second = generate_unique_id({"date": "2024-01-01", "name": "Gala", "notes": "y"}, strategy)
    assert first == second
    assert first.startswith("comp:")


def test_hybrid_falls_back_to_computed():
    strategy = IdStrategyConfig(type="hybrid", external_id_path="ref", computed_id_fields=["name"])
    assert generate_unique_id({"ref": "R1", "name": "Gala"}, strategy) == "ext:R1"
    assert generate_unique_id({"name": "Gala"}, strategy).startswith("comp:")


def test_hybrid_without_any_source_raises():
    strategy = IdStrategyConfig(type="hybrid", external_id_path="ref", computed_id_fields=["name"])
    with pytest.raises(UniqueIdError):
        generate_unique_id({"other": 1}, strategy)


def test_strategy_config_requires_paths():
    with pytest.raises(ValueError):
        IdStrategyConfig(type="computed")
