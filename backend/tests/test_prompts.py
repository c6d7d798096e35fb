"""Tests for prompt building and response parsing."""

import json

import pytest

from docsorter.services.errors import MalformedResponse
from docsorter.services.prompts import (
    MAX_PROMPT_TEXT_LENGTH,
    TRUNCATION_MARKER,
    build_metadata_prompt,
    parse_metadata_response,
    truncate_text,
)

RESPONSE = {
    "clientName": "Acme Corp",
    "clientConfidence": 0.9,
    "date": "2024-01-15",
    "dateConfidence": 0.8,
    "docType": "Invoice",
    "docTypeConfidence": 0.95,
    "amount": 10500.25,
    "amountConfidence": 0.9,
    "title": "Invoice INV-2024-001",
    "titleConfidence": 0.7,
    "snippets": ["Bill To: Acme Corp"],
}


class TestBuildPrompt:
    def test_messages(self):
        messages = build_metadata_prompt("Bill To: Acme Corp")

        assert [m["role"] for m in messages] == ["system", "user"]
        assert "Bill To: Acme Corp" in messages[1]["content"]
        assert "EXAMPLES" in messages[0]["content"]
        assert '"clientName"' in messages[0]["content"]

    def test_without_examples(self):
        messages = build_metadata_prompt("text", include_examples=False)

        assert "EXAMPLES" not in messages[0]["content"]

    def test_language_hint(self):
        system, user = build_metadata_prompt("Rechnung", language_code="deu", language_name="German")

        assert "German (deu)" in system["content"]
        assert "appears to be in German" in user["content"]

    def test_no_hint_without_language(self):
        system, user = build_metadata_prompt("text")

        assert "LANGUAGE CONTEXT" not in system["content"]

    def test_long_text_is_truncated(self):
        text = "a" * (MAX_PROMPT_TEXT_LENGTH + 500)

        messages = build_metadata_prompt(text)

        assert TRUNCATION_MARKER.strip() in messages[1]["content"]
        assert "a" * (MAX_PROMPT_TEXT_LENGTH + 1) not in messages[1]["content"]

    def test_truncate_text(self):
        assert truncate_text("short") == "short"
        assert truncate_text("abcdef", limit=3) == "abc" + TRUNCATION_MARKER


class TestParseResponse:
    def test_plain_json(self):
        result = parse_metadata_response(json.dumps(RESPONSE))

        assert result.clientName == "Acme Corp"
        assert result.amount == 10500.25

    def test_code_fence(self):
        result = parse_metadata_response(f"```json\n{json.dumps(RESPONSE)}\n```")

        assert result.docType == "Invoice"

    def test_surrounding_prose(self):
        result = parse_metadata_response(f"Here you go: {json.dumps(RESPONSE)} Hope this helps!")

        assert result.date == "2024-01-15"

    @pytest.mark.parametrize("content", ["", "   ", "no json at all", "[1, 2, 3]"])
    def test_unusable_content(self, content):
        with pytest.raises(MalformedResponse):
            parse_metadata_response(content)

    def test_missing_required_fields(self):
        partial = {k: v for k, v in RESPONSE.items() if k not in ("snippets", "dateConfidence")}

        with pytest.raises(MalformedResponse) as exc_info:
            parse_metadata_response(json.dumps(partial))

        assert "dateConfidence" in str(exc_info.value)
        assert "snippets" in str(exc_info.value)

    def test_values_are_cleaned(self):
        result = parse_metadata_response(json.dumps({**RESPONSE, "clientConfidence": 3, "date": "January 15, 2024"}))

        assert result.clientConfidence == 1.0
        assert result.date == "2024-01-15"
