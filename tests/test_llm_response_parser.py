"""Tests for taskpilot/llm/response_parser.py."""

import json

import pytest

from taskpilot.core.exceptions import ValidationError
from taskpilot.llm.response_parser import (
    extract_code_blocks,
    parse_generated_artifact,
    parse_json_response,
)


class TestExtractCodeBlocks:
    def test_all_blocks(self):
        text = "intro\n```python\nprint(1)\n```\nmore\n```\nplain\n```"
        assert extract_code_blocks(text) == ["print(1)", "plain"]

    def test_language_filter(self):
        text = "```python\nprint(1)\n```\n```json\n{\"a\": 1}\n```"
        assert extract_code_blocks(text, "json") == ['{"a": 1}']

    def test_none(self):
        assert extract_code_blocks("no fences") == []


class TestParseJsonResponse:
    def test_plain_json(self):
        assert parse_json_response('{"key": "value"}') == {"key": "value"}

    def test_json_fence(self):
        assert parse_json_response('```json\n{"key": "value"}\n```') == {"key": "value"}

    def test_plain_fence(self):
        assert parse_json_response('```\n{"key": "value"}\n```') == {"key": "value"}

    def test_json_block_inside_prose(self):
        text = 'Here you go:\n```json\n{"key": "value"}\n```\nEnjoy.'
        assert parse_json_response(text) == {"key": "value"}

    def test_not_json(self):
        with pytest.raises(ValidationError, match="not valid JSON") as exc_info:
            parse_json_response("not json at all")
        assert exc_info.value.raw == "not json at all"

    def test_array_rejected(self):
        with pytest.raises(ValidationError, match="Expected a JSON object"):
            parse_json_response("[1, 2]")


class TestParseGeneratedArtifact:
    def test_valid(self):
        raw = json.dumps({"code": "print(1)", "language": "python", "filename": "a.py"})
        artifact = parse_generated_artifact(raw)
        assert artifact.code == "print(1)"
        assert artifact.language == "python"
        assert artifact.description == ""

    def test_missing_code(self):
        with pytest.raises(ValidationError, match="code"):
            parse_generated_artifact(json.dumps({"language": "python"}))

    def test_blank_language(self):
        with pytest.raises(ValidationError, match="language"):
            parse_generated_artifact(json.dumps({"code": "x", "language": " "}))

    def test_wraps_pydantic_error(self):
        from pydantic import ValidationError as PydanticValidationError

        with pytest.raises(ValidationError) as exc_info:
            parse_generated_artifact("{}")
        assert isinstance(exc_info.value.__cause__, PydanticValidationError)
