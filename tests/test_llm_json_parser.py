import pytest

from pipelines.lib.llm_parsing import find_code_blocks, parse_json_dict_from_llm, strip_llm_reasoning_sections


def test_parse_llm_json_plain_dict() -> None:
    text = '{"operation":"delete","conditions":[]}'
    parsed = parse_json_dict_from_llm(text)
    assert parsed["operation"] == "delete"


def test_parse_llm_json_fenced_block() -> None:
    text = "```json\n{\"operation\":\"update\",\"column\":\"PriorityLevel\"}\n```"
    parsed = parse_json_dict_from_llm(text)
    assert parsed["column"] == "PriorityLevel"


def test_parse_llm_json_with_noise() -> None:
    text = "Here is JSON:\n{\"operation\":\"add\",\"newRow\":{\"TaskID\":\"T9\"}}\nThanks"
    parsed = parse_json_dict_from_llm(text)
    assert parsed["newRow"] == {"TaskID": "T9"}


def test_parse_llm_json_rejects_non_object() -> None:
    with pytest.raises(ValueError):
        parse_json_dict_from_llm("[1, 2, 3]")


def test_parse_llm_json_rejects_empty_text() -> None:
    with pytest.raises(ValueError, match="did not return JSON"):
        parse_json_dict_from_llm("   ")


def test_parse_llm_json_with_think_and_invalid_braces_before_valid_object() -> None:
    text = (
        "<think>\n"
        "I will answer with JSON. {not_json_here}\n"
        "</think>\n"
        '{"operation":"delete","summary":"ok"}'
    )
    parsed = parse_json_dict_from_llm(text)
    assert parsed["summary"] == "ok"


def test_parse_llm_json_ignores_thinking_fence_with_broken_braces() -> None:
    text = (
        "```thinking\n"
        "{not_json_here\n"
        "```\n"
        '{"operation":"update","summary":"fenced"}'
    )
    parsed = parse_json_dict_from_llm(text)
    assert parsed["summary"] == "fenced"


def test_parse_llm_json_keeps_braces_inside_strings() -> None:
    text = 'Result: {"operation":"update","newValue":"{\\"a\\": 1}"} done'
    parsed = parse_json_dict_from_llm(text)
    assert parsed["newValue"] == '{"a": 1}'


def test_find_code_blocks_extracts_js_fence_inside_think() -> None:
    text = "<think>\n```javascript\nworker.Skills.length > 2\n```\n</think>"
    blocks = find_code_blocks(text)
    assert blocks
    assert blocks[0] == "worker.Skills.length > 2"


def test_find_code_blocks_prefers_js_fence_over_other_fences() -> None:
    text = "```text\nnot code\n```\n```js\ntask.Duration > 2\n```"
    blocks = find_code_blocks(text)
    assert blocks[0] == "task.Duration > 2"


def test_strip_llm_reasoning_sections_removes_think_tags() -> None:
    text = "<think>ponder</think>task.Duration > 1"
    assert strip_llm_reasoning_sections(text) == "task.Duration > 1"
