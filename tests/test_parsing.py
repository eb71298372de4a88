from __future__ import annotations

import json

import pytest

from agent_coordinator.errors import ResponseParseError
from agent_coordinator.parsing import parse_llm_json_response


def test_parse_extracts_object_wrapped_in_prose() -> None:
    text = 'Sure! Here is the analysis:\n{"intent": "build api", "complexity": "Low"}\nThanks.'
    assert parse_llm_json_response(text, "request_understanding") == {
        "intent": "build api",
        "complexity": "Low",
    }


def test_parse_extracts_top_level_array() -> None:
    text = 'Plan follows [{"title": "a"}, {"title": "b"}] done'
    assert parse_llm_json_response(text, "subtask_breakdown_list") == [
        {"title": "a"},
        {"title": "b"},
    ]


def test_parse_uses_earliest_opener_and_latest_closer() -> None:
    text = 'note: [{"nested": {"k": [1, 2]}}] trailing'
    assert parse_llm_json_response(text, "strategic_plan") == [{"nested": {"k": [1, 2]}}]


def test_parse_without_json_reports_stage() -> None:
    with pytest.raises(ResponseParseError) as exc_info:
        parse_llm_json_response("I could not produce a plan.", "strategic_plan")

    assert exc_info.value.stage == "strategic_plan"
    assert exc_info.value.reason == "no JSON found"
    assert exc_info.value.code == "RESPONSE_PARSE_ERROR"


def test_parse_rejects_inverted_boundaries() -> None:
    with pytest.raises(ResponseParseError) as exc_info:
        parse_llm_json_response("} oops {", "request_understanding")

    assert exc_info.value.reason == "mismatched JSON"


def test_parse_does_not_repair_malformed_interior() -> None:
    with pytest.raises(ResponseParseError) as exc_info:
        parse_llm_json_response('{"a": 1,}', "request_understanding")

    assert exc_info.value.reason.startswith("decode failed")
    assert exc_info.value.raw_preview == '{"a": 1,}'


def test_parse_fails_on_two_separate_payloads() -> None:
    with pytest.raises(ResponseParseError):
        parse_llm_json_response('{"a": 1} and also {"b": 2}', "strategic_plan")


def test_parse_ignores_surrounding_prose_of_any_length() -> None:
    payload = {"goal": "add logging", "steps": ["add logger", "wire middleware"]}
    body = json.dumps(payload)
    for prefix_len, suffix_len in ((0, 0), (1, 0), (0, 1), (50, 3), (5000, 5000)):
        text = ("p" * prefix_len) + body + ("s" * suffix_len)
        assert parse_llm_json_response(text, "strategic_plan") == payload
