import json

import pytest

from parsing.json_repair import (
    MalformedOutputError,
    apply_heuristic_fixes,
    close_open_structures,
    parse_balanced,
    parse_direct,
    parse_json,
    parse_with_heuristics,
    recover_truncated,
    strip_markdown,
)

DOC = {"title": "Deck", "slides": [{"n": 1, "tags": ["a", "b"]}, {"n": 2, "tags": []}]}


def test_strip_markdown_removes_fence_and_prose():
    text = 'Here is your outline:\n```json\n{"a": 1}\n```\nHope this helps.'
    assert strip_markdown(text) == '{"a": 1}'


def test_strip_markdown_unclosed_fence():
    assert strip_markdown('```json\n{"a": [1, 2') == '{"a": [1, 2'


def test_parse_direct_valid_json():
    assert parse_direct(json.dumps(DOC)) == DOC


def test_parse_direct_ignores_trailing_prose():
    assert parse_direct('{"a": 1} and that is all') == {"a": 1}


def test_parse_direct_rejects_broken_json():
    with pytest.raises(MalformedOutputError):
        parse_direct("{title: 'Deck'}")


def test_parse_with_heuristics_fixes_unquoted_keys_and_single_quotes():
    assert parse_with_heuristics("{title: 'Deck', count: 3}") == {"title": "Deck", "count": 3}


def test_parse_with_heuristics_fixes_trailing_commas():
    assert parse_with_heuristics('{"items": [1, 2, 3,],}') == {"items": [1, 2, 3]}


def test_apply_heuristic_fixes_separates_adjacent_values():
    fixed = apply_heuristic_fixes('{"items": ["a" "b"], "rows": [{"x": 1} {"x": 2}]}')
    assert json.loads(fixed) == {"items": ["a", "b"], "rows": [{"x": 1}, {"x": 2}]}


def test_close_open_structures_ignores_brackets_in_strings():
    assert close_open_structures('{"text": "a [b", "list": [1') == '{"text": "a [b", "list": [1]}'


def test_close_open_structures_closes_unterminated_string_and_comma():
    assert json.loads(close_open_structures('{"a": "unfinished')) == {"a": "unfinished"}
    assert json.loads(close_open_structures('{"a": [1, 2,')) == {"a": [1, 2]}


def test_parse_balanced_recovers_missing_closers():
    text = json.dumps(DOC)[:-2]
    assert parse_balanced(text) == DOC


def test_recover_truncated_drops_partial_tail():
    text = '{"slides": [{"a": 1}, {"b": 2}, {"c": 3, "d'
    assert recover_truncated(text) == {"slides": [{"a": 1}, {"b": 2}]}


def test_recover_truncated_respects_acceptor():
    with pytest.raises(MalformedOutputError):
        recover_truncated('{"slides": [{"a": 1}, {"b": 2}, {"c": 3, "d', accept=lambda value: False)


def test_parse_json_reports_strategy():
    assert parse_json(json.dumps(DOC)).strategy == "parse_direct"
    assert parse_json("{title: 'x'}").strategy == "parse_with_heuristics"
    assert parse_json('{"slides": [{"a": 1}, {"b": 2}, {"c": 3, "d').strategy == "recover_truncated"


def test_parse_json_applies_acceptor_to_every_strategy():
    with pytest.raises(MalformedOutputError) as excinfo:
        parse_json("[1, 2, 3]", accept=lambda value: isinstance(value, dict))
    assert len(excinfo.value.attempts) == 4


def test_parse_json_failure_lists_attempts():
    with pytest.raises(MalformedOutputError) as excinfo:
        parse_json("I'm sorry, I can't help with that outline.")
    assert "Unable to parse JSON" in str(excinfo.value)
    assert excinfo.value.raw_text.startswith("I'm sorry")


@pytest.mark.parametrize(
    "variant",
    [
        '{title: "Deck", slides: [{n: 1, tags: ["a", "b"]}, {n: 2, tags: []}]}',
        '{"title": "Deck", "slides": [{"n": 1, "tags": ["a", "b",],}, {"n": 2, "tags": [],},],}',
        "{'title': 'Deck', 'slides': [{'n': 1, 'tags': ['a', 'b']}, {'n': 2, 'tags': []}]}",
        '{"title": "Deck", "slides": [{"n": 1, "tags": ["a", "b"]}, {"n": 2, "tags": []',
    ],
    ids=["unquoted-keys", "trailing-comma", "single-quotes", "truncated"],
)
def test_corrupted_variants_parse_to_the_same_structure(variant):
    assert parse_json(variant).value == parse_json(json.dumps(DOC)).value == DOC
