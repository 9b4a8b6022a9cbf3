"""Tests for JSON recovery from AI responses."""
from app.services.json_extraction import extract_json, find_balanced_block, repair_json


def test_plain_json():
    result = extract_json('{"category": "Maison"}')
    assert result.ok
    assert result.value == {"category": "Maison"}
    assert result.strategy == "direct"


def test_fenced_json():
    result = extract_json('Voici:\n```json\n{"tags": ["a", "b"]}\n```')
    assert result.value == {"tags": ["a", "b"]}
    assert result.strategy == "fences"


def test_json_inside_prose():
    result = extract_json('Sure! Here it is: {"a": {"b": "x}"}} Hope it helps.')
    assert result.value == {"a": {"b": "x}"}}
    assert result.strategy == "balanced"


def test_trailing_commas_repaired():
    result = extract_json('{"a": [1, 2,],}')
    assert result.value == {"a": [1, 2]}
    assert result.strategy == "repaired"


def test_smart_quotes_repaired():
    result = extract_json("{“name”: “Lampe”}")
    assert result.value == {"name": "Lampe"}


def test_arrays_are_accepted():
    assert extract_json("result: [1, 2, 3]").value == [1, 2, 3]


def test_failures_do_not_raise():
    assert not extract_json("").ok
    assert not extract_json(None).ok

    result = extract_json("no json here")
    assert not result.ok
    assert result.error


def test_helpers():
    assert find_balanced_block('x {"a": "[" } y') == '{"a": "[" }'
    assert find_balanced_block("{ unclosed") is None
    assert repair_json("[1,]") == "[1]"
