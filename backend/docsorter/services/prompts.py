"""
Prompt templates and response parsing for metadata extraction.

The backend is asked for one JSON object with per-field confidences.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from docsorter.models.schemas import InferenceMetadata
from docsorter.services.errors import MalformedResponse

logger = logging.getLogger(__name__)

MAX_PROMPT_TEXT_LENGTH = 3000
TRUNCATION_MARKER = "\n\n[Text truncated...]"

REQUIRED_FIELDS = (
    "clientName", "clientConfidence",
    "date", "dateConfidence",
    "docType", "docTypeConfidence",
    "snippets",
)

SYSTEM_INSTRUCTIONS = """You are a document metadata extraction assistant. Your task is to analyze document text and extract structured information about the client, date, document type, amount and title.{language_context}

CRITICAL REQUIREMENTS:
1. You MUST respond with ONLY valid JSON
2. Do not include any text before or after the JSON
3. Use the exact field names specified below
4. Provide confidence scores as numbers between 0.0 and 1.0
5. If information is not found, use null for the value and 0.0 for confidence
6. Extract relevant text snippets that support your findings

REQUIRED JSON STRUCTURE:
{{
  "clientName": "string or null",
  "clientConfidence": "number between 0.0 and 1.0",
  "date": "string in YYYY-MM-DD format or null",
  "dateConfidence": "number between 0.0 and 1.0",
  "docType": "string or null",
  "docTypeConfidence": "number between 0.0 and 1.0",
  "amount": "number or null",
  "amountConfidence": "number between 0.0 and 1.0",
  "title": "string or null",
  "titleConfidence": "number between 0.0 and 1.0",
  "snippets": ["array of supporting text snippets"]
}}

FIELD GUIDELINES:
- clientName: Company, organization, or person name (e.g., "Acme Corporation", "John Smith")
- date: Document date in YYYY-MM-DD format (e.g., "2024-01-15")
- docType: Document type (e.g., "Invoice", "Contract", "Receipt", "Statement", "Report")
- amount: Grand total for invoices and receipts, as a plain number
- title: Short human-readable document title
- snippets: Array of 1-3 relevant text excerpts that support your findings
- confidence: How certain you are (0.0 = not found, 1.0 = very certain)"""

EXAMPLES = """

EXAMPLES:

Example 1 - Invoice:
Input: "INVOICE #12345\\nAcme Corporation\\n123 Business St\\nInvoice Date: January 15, 2024\\nAmount Due: $1,500.00"
Output: {"clientName": "Acme Corporation", "clientConfidence": 0.95, "date": "2024-01-15", "dateConfidence": 0.90, "docType": "Invoice", "docTypeConfidence": 0.98, "amount": 1500.00, "amountConfidence": 0.9, "title": "INVOICE #12345", "titleConfidence": 0.6, "snippets": ["INVOICE #12345", "Invoice Date: January 15, 2024"]}

Example 2 - Unclear Document:
Input: "Random text with no clear structure or identifiable information"
Output: {"clientName": null, "clientConfidence": 0.0, "date": null, "dateConfidence": 0.0, "docType": null, "docTypeConfidence": 0.0, "amount": null, "amountConfidence": 0.0, "title": null, "titleConfidence": 0.0, "snippets": []}"""


def truncate_text(text: str, limit: int = MAX_PROMPT_TEXT_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def build_metadata_prompt(text: str, language_code: Optional[str] = None,
                          language_name: Optional[str] = None,
                          include_examples: bool = True) -> list[dict[str, str]]:
    """
    Build the [system, user] messages for one document.

    A language hint is added to both messages when the language is known.
    """
    language_context = ""
    language_hint = ""
    if language_code and language_name:
        language_context = (
            f"\nLANGUAGE CONTEXT: The document appears to be written in {language_name} ({language_code}). "
            "Please consider this when extracting metadata and interpreting document structure."
        )
        language_hint = f"\nNote: This document appears to be in {language_name}. Please consider this when extracting metadata."

    system_prompt = SYSTEM_INSTRUCTIONS.format(language_context=language_context)
    if include_examples:
        system_prompt += EXAMPLES

    user_prompt = (
        "Please analyze the following document text and extract the metadata as specified in the "
        f"system instructions. Respond with ONLY the JSON object, no additional text.{language_hint}\n\n"
        f"DOCUMENT TEXT:\n{truncate_text(text)}"
    )

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def _extract_json_object(content: str) -> Optional[dict[str, Any]]:
    cleaned = content.strip()
    # Strip markdown code fences
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
    cleaned = re.sub(r"\s*```$", "", cleaned)

    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_metadata_response(content: str) -> InferenceMetadata:
    """
    Parse and clean the backend's answer.

    Raises:
        MalformedResponse: no JSON object, missing required fields, or
            values of the wrong shape
    """
    if not content or not content.strip():
        raise MalformedResponse("Empty response content")

    data = _extract_json_object(content)
    if data is None:
        logger.warning(f"No JSON object in response: {content[:200]}...")
        raise MalformedResponse("No valid JSON object found in response")

    missing = [key for key in REQUIRED_FIELDS if key not in data]
    if missing:
        raise MalformedResponse(f"Missing required fields: {', '.join(missing)}")

    try:
        return InferenceMetadata.model_validate(data)
    except ValidationError as e:
        raise MalformedResponse(f"Response does not match expected schema: {e}") from e
