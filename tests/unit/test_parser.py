"""Model-output parser tests."""

import json

import pytest

from tutorflow.api.middleware.parser import Malformed, Parsed, extract_json, parse_model_output
from tutorflow.api.middleware.schema import SafeDefaultReason
from tutorflow.core.exceptions import MalformedOutputError


class TestParseModelOutput:

    def test_whole_text_json(self, answer_json):
        result = parse_model_output(answer_json)
        assert isinstance(result, Parsed)
        assert result.strategy == "whole_text"
        assert result.answer.title == "Recursion"
        assert len(result.answer.sections) == 2

    def test_leading_prose_uses_trailing_object(self, answer_json):
        result = parse_model_output(f"Sure! Here is your answer:\n\n{answer_json}")
        assert isinstance(result, Parsed)
        assert result.strategy == "trailing_object"

    def test_trailing_chatter_uses_scan(self, answer_json):
        result = parse_model_output(f"Answer: {answer_json}\nHope this helps!")
        assert isinstance(result, Parsed)
        assert result.strategy == "scan"

    def test_scan_skips_objects_that_do_not_validate(self, answer_json):
        text = f'Metadata {{"confidence": 0.9}} and the answer {answer_json} done.'
        result = parse_model_output(text)
        assert isinstance(result, Parsed)
        assert result.answer.title == "Recursion"

    def test_summary_is_accepted_for_tldr(self):
        payload = {"title": "T", "summary": "short", "sections": []}
        result = parse_model_output(json.dumps(payload))
        assert isinstance(result, Parsed)
        assert result.answer.tldr == "short"

    def test_extra_fields_are_ignored(self, answer_payload):
        answer_payload["confidence"] = 0.99
        result = parse_model_output(json.dumps(answer_payload))
        assert isinstance(result, Parsed)

    @pytest.mark.parametrize("text", [None, "", "I'm sorry, I cannot answer that."])
    def test_no_braces_is_malformed(self, text):
        result = parse_model_output(text)
        assert isinstance(result, Malformed)
        assert result.reason == SafeDefaultReason.MALFORMED_OUTPUT
        assert result.raw_text == (text or "")

    def test_broken_json_is_malformed(self):
        result = parse_model_output('{"title": "Recursion", "sections": [')
        assert isinstance(result, Malformed)
        assert result.reason == SafeDefaultReason.MALFORMED_OUTPUT

    def test_object_failing_schema_is_schema_invalid(self):
        result = parse_model_output(json.dumps({"title": "", "sections": []}))
        assert isinstance(result, Malformed)
        assert result.reason == SafeDefaultReason.SCHEMA_INVALID
        assert any(err.startswith("title") for err in result.errors)

    def test_schema_errors_are_deduplicated(self):
        # whole_text and scan both find the same invalid object
        result = parse_model_output(json.dumps({"sections": []}))
        assert isinstance(result, Malformed)
        assert len(result.errors) == len(set(result.errors))

    def test_json_array_is_not_an_answer(self):
        result = parse_model_output("[1, 2, 3]")
        assert isinstance(result, Malformed)
        assert result.reason == SafeDefaultReason.MALFORMED_OUTPUT

    def test_results_pattern_match(self, answer_json):
        match parse_model_output(answer_json):
            case Parsed(answer=answer):
                assert answer.title == "Recursion"
            case Malformed():
                pytest.fail("expected a parsed answer")


class TestExtractJson:

    def test_returns_first_object(self):
        assert extract_json('noise {"a": 1} more {"b": 2}') == {"a": 1}

    def test_raises_when_no_object(self):
        with pytest.raises(MalformedOutputError) as exc_info:
            extract_json("plain text")
        assert exc_info.value.raw_text == "plain text"
        assert exc_info.value.error_code == "MALFORMED_OUTPUT"
