from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SAMPLE_ROWS = 50

MessageType = Literal["user", "bot", "report"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DatasetDescriptor(BaseModel):
    """Parsed summary of an uploaded CSV: columns, total rows and a bounded sample."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    columns: list[str] = Field(alias="schema")
    row_count: int = Field(alias="rowCount", ge=0)
    sample: list[dict[str, Any]] = Field(default_factory=list, max_length=SAMPLE_ROWS)
    file_name: str = Field(alias="fileName")

    @field_validator("columns")
    @classmethod
    def _unique_columns(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("Column names must be unique.")
        return value

    @property
    def is_sampled(self) -> bool:
        return self.row_count > len(self.sample)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: MessageType
    message: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)
    report: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _report_only_on_report_messages(self) -> "Message":
        if self.type == "report" and self.report is None:
            raise ValueError("Report messages must carry a report payload.")
        if self.type != "report" and self.report is not None:
            raise ValueError("Only report messages may carry a report payload.")
        return self

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ChatRequest(BaseModel):
    message: str = ""
    csv_data: DatasetDescriptor | None = Field(default=None, alias="csvData")
    chat_history: list[Message] = Field(default_factory=list, alias="chatHistory")

    model_config = ConfigDict(populate_by_name=True)


class ChatResponse(BaseModel):
    response: str


class ReportRequest(BaseModel):
    csv_data: DatasetDescriptor | None = Field(default=None, alias="csvData")

    model_config = ConfigDict(populate_by_name=True)


class ReportResponse(BaseModel):
    report: dict[str, Any]


class UploadResponse(BaseModel):
    csv_data: DatasetDescriptor = Field(alias="csvData")

    model_config = ConfigDict(populate_by_name=True)
