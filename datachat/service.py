"""
Chat and report pipeline:
context -> prompt -> gateway -> sanitizer/validator.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence

from datachat.errors import InputValidationError, UpstreamError
from datachat.llm_client import CHAT_GENERATION, REPORT_GENERATION, ModelGateway
from datachat.llm_gate import parse_business_report, sanitize_text
from datachat.llm_schemas import BusinessReport
from datachat.models import DatasetDescriptor, Message
from datachat.prompts import build_chat_prompt, build_report_prompt

logger = logging.getLogger(__name__)

REPORT_FAILURE_MESSAGE = "Failed to generate business report."


def answer_question(
    gateway: ModelGateway,
    question: str,
    dataset: DatasetDescriptor | None,
    history: Sequence[Message] = (),
) -> str:
    question = (question or "").strip()
    if not question:
        raise InputValidationError("Message is required.")

    prompt = build_chat_prompt(question, dataset, history)
    reply = gateway.generate(prompt, CHAT_GENERATION)
    return sanitize_text(reply)


def generate_business_report(gateway: ModelGateway, dataset: DatasetDescriptor | None) -> BusinessReport:
    if dataset is None:
        raise InputValidationError("CSV data is required for report generation.")

    prompt = build_report_prompt(dataset)
    try:
        raw_text = gateway.generate(prompt, REPORT_GENERATION)
    except UpstreamError as exc:
        logger.error("Report generation failed for %s: %s", dataset.file_name, exc.kind.value)
        raise UpstreamError(REPORT_FAILURE_MESSAGE) from exc

    report, used_fallback = parse_business_report(raw_text, dataset.row_count, len(dataset.columns))
    if used_fallback:
        logger.info("Serving fallback report for %s", dataset.file_name)
    return report
