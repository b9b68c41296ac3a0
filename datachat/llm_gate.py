from __future__ import annotations

import json
import logging
import re
from typing import Any

from jsonschema import ValidationError, validate

from datachat.errors import ResponseValidationError, UpstreamMalformedResponse
from datachat.llm_schemas import BUSINESS_REPORT_SCHEMA, BusinessReport, fallback_report

logger = logging.getLogger(__name__)

# Denylist filter for text that is displayed, not a full HTML sanitizer. It does
# not catch every injection vector (e.g. <object>, <svg>, entity-encoded
# payloads), so replies must be rendered as escaped text, never as live markup.
_SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_IFRAME_TAG = re.compile(r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE)
_JS_URI = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)

_MD_BOLD = re.compile(r"\*\*(.*?)\*\*")
_MD_ITALIC = re.compile(r"\*(.*?)\*")
_MD_HEADING = re.compile(r"#{1,6}\s")

_JSON_DECODER = json.JSONDecoder()


def sanitize_text(text: str, strip_markdown: bool = False) -> str:
    cleaned = _SCRIPT_TAG.sub("", text or "")
    cleaned = _IFRAME_TAG.sub("", cleaned)
    cleaned = _JS_URI.sub("", cleaned)
    cleaned = _EVENT_HANDLER.sub("", cleaned)
    if strip_markdown:
        cleaned = _MD_BOLD.sub(r"\1", cleaned)
        cleaned = _MD_ITALIC.sub(r"\1", cleaned)
        cleaned = _MD_HEADING.sub("", cleaned)
    return cleaned.strip()


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Pull the JSON object out of a model reply that may wrap it in prose or
    code fences.

    The span from the first ``{`` to the last ``}`` is tried first. When that
    does not parse (typically because trailing prose contains another brace),
    the first complete object starting at the first ``{`` is decoded instead.

    Known failure modes, all raised as UpstreamMalformedResponse:
      - no ``{`` ... ``}`` span at all;
      - leading prose containing a ``{`` before the real object;
      - a truncated object (model hit its token ceiling);
      - a top-level value that is not an object.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise UpstreamMalformedResponse("No JSON object found in AI response.")

    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        try:
            parsed, _ = _JSON_DECODER.raw_decode(text, start)
        except json.JSONDecodeError as exc:
            raise UpstreamMalformedResponse(f"AI response is not valid JSON: {exc.msg}") from exc

    if not isinstance(parsed, dict):
        raise UpstreamMalformedResponse("AI response JSON is not an object.")
    return parsed


def validate_schema(output: dict[str, Any], schema: dict[str, Any]) -> None:
    try:
        validate(instance=output, schema=schema)
    except ValidationError as exc:
        raise ResponseValidationError(exc.message) from exc


def parse_business_report(raw_text: str, rows: int, columns: int) -> tuple[BusinessReport, bool]:
    """
    Turn the model's reply into a complete report.

    All or nothing: either the parsed object passes validation and is
    returned untouched, or the fixed fallback is returned. Returns
    ``(report, used_fallback)``.
    """
    cleaned = sanitize_text(raw_text)
    try:
        report = extract_json_object(cleaned)
        validate_schema(report, BUSINESS_REPORT_SCHEMA)
    except (UpstreamMalformedResponse, ResponseValidationError) as exc:
        logger.warning("Report parsing failed (%s): %s. Raw text: %.500s", exc.kind.value, exc.message, cleaned)
        return fallback_report(rows, columns), True
    return report, False
