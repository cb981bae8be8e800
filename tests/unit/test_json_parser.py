import pytest

from everwell.services.llm import FALLBACK_INSIGHTS, parse_insights_response, parse_llm_json


def test_parse_llm_json_valid() -> None:
    payload = parse_llm_json('{"summary":"ok","actions":["a","b","c"]}')
    assert payload["summary"] == "ok"


def test_parse_llm_json_fenced_block() -> None:
    payload = parse_llm_json('Sure!\n```json\n{"ok": true}\n```\nAnything else?')
    assert payload == {"ok": True}


def test_parse_llm_json_embedded_object() -> None:
    payload = parse_llm_json('Here you go: {"summary": "fine", "risk_flags": []} thanks')
    assert payload["summary"] == "fine"


def test_parse_llm_json_malformed_raises() -> None:
    with pytest.raises(ValueError):
        parse_llm_json('{"summary":"bad",}')


def test_parse_llm_json_rejects_arrays() -> None:
    with pytest.raises(ValueError):
        parse_llm_json('["not", "an", "object"]')


def test_parse_insights_response_falls_back() -> None:
    result = parse_insights_response("I could not do that.")
    assert result == FALLBACK_INSIGHTS
    assert result is not FALLBACK_INSIGHTS
