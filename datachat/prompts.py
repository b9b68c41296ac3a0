"""
Context Builder and Prompt Assembler.

Everything here is a pure function of its inputs: the same dataset, history
and question always produce the same prompt string.
"""
from __future__ import annotations

import json
from collections.abc import Iterable

from datachat.llm_schemas import REPORT_JSON_TEMPLATE
from datachat.models import DatasetDescriptor, Message

HISTORY_LIMIT = 10

NO_DATA_CONTEXT = "No CSV data has been uploaded yet. Please ask the user to upload a CSV file first."

CHAT_SYSTEM_INSTRUCTION = (
    "You are a helpful data analyst chatbot. Your job is to analyze CSV data provided by the user "
    "and answer questions in simple, clear, and actionable insights. Always use the dataset schema, "
    "row count, and sample rows given. If data is missing, explain that clearly. "
    "Suggest possible visualizations where relevant."
)

CHAT_CLOSING_INSTRUCTION = (
    "Please provide a helpful, clear response based on the available data. If the question requires "
    "analysis of specific data that isn't in the sample, mention that the analysis is limited to the "
    "sample data shown."
)

REPORT_SYSTEM_INSTRUCTION = (
    "You are an expert data analyst. Analyze the uploaded business dataset and return insights "
    f"in the following strict JSON format:\n{REPORT_JSON_TEMPLATE}\n"
    "Do not include any extra text. Return only JSON."
)

REPORT_CLOSING_INSTRUCTION = (
    "Analyze this business data and provide comprehensive insights in the exact JSON format specified "
    "above. Include specific numbers, percentages, and actionable recommendations. "
    "Return only the JSON object, with no surrounding prose or markdown."
)


def _render_row(index: int, row: dict) -> str:
    return f"Record {index}: {json.dumps(row, ensure_ascii=False, default=str)}"


def build_dataset_context(dataset: DatasetDescriptor | None) -> str:
    if dataset is None:
        return NO_DATA_CONTEXT

    lines = [
        "Dataset Information:",
        f"- File: {dataset.file_name}",
        f"- Total Records: {dataset.row_count}",
        f"- Columns ({len(dataset.columns)}): {', '.join(dataset.columns)}",
        "",
        f"Sample Data ({len(dataset.sample)} rows):",
    ]
    lines.extend(_render_row(index, row) for index, row in enumerate(dataset.sample, start=1))
    if dataset.is_sampled:
        lines.append("")
        lines.append(
            f"Note: This analysis is based on a sample of {len(dataset.sample)} rows from the full "
            f"dataset of {dataset.row_count} rows due to processing limitations."
        )
    return "\n".join(lines)


def recent_history(history: Iterable[Message], limit: int = HISTORY_LIMIT) -> list[Message]:
    eligible = [msg for msg in history if msg.type in ("user", "bot")]
    return eligible[-limit:] if limit > 0 else []


def build_history_context(history: Iterable[Message], limit: int = HISTORY_LIMIT) -> str:
    recent = recent_history(history, limit)
    if not recent:
        return ""
    lines = ["Recent conversation:"]
    for msg in recent:
        speaker = "User" if msg.type == "user" else "Assistant"
        lines.append(f"{speaker}: {msg.message}")
    return "\n".join(lines)


def build_context(dataset: DatasetDescriptor | None, history: Iterable[Message]) -> str:
    """Dataset block followed by the recent-history block, if any."""
    parts = [build_dataset_context(dataset)]
    history_block = build_history_context(history)
    if history_block:
        parts.append(history_block)
    return "\n\n".join(parts)


def build_chat_prompt(question: str, dataset: DatasetDescriptor | None, history: Iterable[Message]) -> str:
    return "\n\n".join(
        [
            CHAT_SYSTEM_INSTRUCTION,
            build_context(dataset, history),
            f"Current user question: {question}",
            CHAT_CLOSING_INSTRUCTION,
        ]
    )


def build_report_prompt(dataset: DatasetDescriptor) -> str:
    return "\n\n".join(
        [
            REPORT_SYSTEM_INSTRUCTION,
            build_dataset_context(dataset),
            REPORT_CLOSING_INSTRUCTION,
        ]
    )
