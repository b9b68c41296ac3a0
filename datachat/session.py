"""
Session-scoped chat state.

A ChatSession owns one conversation and at most one dataset, talks to the
HTTP API, and writes every mutation through to a ConversationStore. There is
no module-level state: callers create a session and pass it around.
"""
from __future__ import annotations

import logging
import os
import threading
from enum import Enum
from typing import Any, Protocol

import requests
from pydantic import ValidationError

from datachat.errors import PipelineError, UpstreamError, UpstreamTransportError
from datachat.llm_gate import sanitize_text
from datachat.llm_schemas import BusinessReport
from datachat.models import DatasetDescriptor, Message
from datachat.store import ConversationStore

logger = logging.getLogger(__name__)

API_BASE_URL = os.getenv("DATACHAT_API_URL", "http://localhost:8000").rstrip("/")

GREETING = (
    "👋 Hi! I'm your Data Assistant. Upload a CSV file and ask me questions like "
    "'Which product had the highest sales last month?' or 'Compare expenses across regions.' "
    "I'll analyze and give you real-time insights."
)
CHAT_FAILURE_REPLY = "Sorry, I encountered an error while processing your request. Please try again."
REPORT_FAILURE_REPLY = (
    "Sorry, I couldn't generate the business report. Please try again or check if your data "
    "contains the necessary business metrics."
)
REPORT_TITLE = "Comprehensive Business Analysis Report Generated"
REPORT_SUMMARY_REPLY = (
    "I've generated a comprehensive business analysis report based on your data. The report includes "
    "churn analysis, financial projections, demand forecasting, scenario analysis, and strategic "
    "recommendations."
)


class HttpClient(Protocol):
    def post(self, url: str, **kwargs: Any) -> Any: ...


class Intent(str, Enum):
    CHAT = "chat"
    REPORT = "report"


class RequestState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def greeting_message() -> Message:
    return Message(type="bot", message=GREETING)


def upload_message(dataset: DatasetDescriptor) -> Message:
    return Message(
        type="bot",
        message=(
            f'Great! I\'ve analyzed your CSV file "{dataset.file_name}". It has {dataset.row_count} rows '
            f"and {len(dataset.columns)} columns: {', '.join(dataset.columns)}. "
            "What would you like to know about your data?"
        ),
    )


class ChatSession:
    def __init__(
        self,
        http: HttpClient | None = None,
        store: ConversationStore | None = None,
        base_url: str = API_BASE_URL,
    ) -> None:
        self.http = http or requests.Session()
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.conversation: list[Message] = [greeting_message()]
        self.dataset: DatasetDescriptor | None = None
        self.states: dict[Intent, RequestState] = {intent: RequestState.IDLE for intent in Intent}
        self.errors: dict[Intent, str | None] = {intent: None for intent in Intent}
        self._lock = threading.Lock()

    # -- persistence -----------------------------------------------------------

    def load(self) -> None:
        if self.store is None:
            return
        conversation = self.store.load_conversation()
        if conversation:
            self.conversation = conversation
        dataset = self.store.load_dataset()
        if dataset is not None:
            self.dataset = dataset

    def _persist_conversation(self) -> None:
        if self.store is not None:
            self.store.save_conversation(self.conversation)

    def _append(self, *messages: Message) -> None:
        with self._lock:
            self.conversation = [*self.conversation, *messages]
            self._persist_conversation()

    # -- request bookkeeping ---------------------------------------------------

    def in_flight(self, intent: Intent) -> bool:
        return self.states[intent] is RequestState.SENDING

    def _begin(self, intent: Intent) -> bool:
        with self._lock:
            if self.states[intent] is RequestState.SENDING:
                logger.info("Ignoring %s request: one is already in flight", intent.value)
                return False
            self.states[intent] = RequestState.SENDING
            self.errors[intent] = None
            return True

    def _finish(self, intent: Intent, error: str | None = None) -> None:
        with self._lock:
            self.states[intent] = RequestState.FAILED if error else RequestState.SUCCEEDED
            self.errors[intent] = error

    def _post(self, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self.http.post(f"{self.base_url}{path}", **kwargs)
        except requests.RequestException as exc:
            raise UpstreamTransportError() from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError(f"HTTP {response.status_code}: invalid response body") from exc
        if not isinstance(data, dict):
            raise UpstreamError(f"HTTP {response.status_code}: unexpected response body")
        if response.status_code >= 400:
            error = data.get("error")
            raise UpstreamError(error or f"HTTP {response.status_code}: Failed to get response")
        return data

    # -- operations ------------------------------------------------------------

    def set_dataset(self, dataset: DatasetDescriptor) -> None:
        self.dataset = dataset
        if self.store is not None:
            self.store.save_dataset(dataset)
        self._append(upload_message(dataset))

    def upload(self, file_name: str, content: bytes) -> DatasetDescriptor:
        data = self._post("/upload", files={"file": (file_name, content, "text/csv")})
        try:
            dataset = DatasetDescriptor.model_validate(data["csvData"])
        except (KeyError, ValidationError) as exc:
            raise UpstreamError("Upload returned an invalid dataset.") from exc
        self.set_dataset(dataset)
        return dataset

    def send_message(self, text: str) -> Message | None:
        """Send one chat turn; returns the bot reply, or None if nothing was sent."""
        text = (text or "").strip()
        if not text or not self._begin(Intent.CHAT):
            return None

        reply = Message(type="bot", message=CHAT_FAILURE_REPLY)
        error: str | None = "Failed to get response"
        try:
            history = [message.to_wire() for message in self.conversation]
            self._append(Message(type="user", message=text))
            payload = {
                "message": text,
                "csvData": self.dataset.to_wire() if self.dataset else None,
                "chatHistory": history,
            }
            data = self._post("/chat", json=payload)
            reply = Message(type="bot", message=sanitize_text(str(data.get("response", "")), strip_markdown=True))
            error = None
        except PipelineError as exc:
            logger.error("Chat error: %s", exc.message)
            error = exc.message
        except Exception as exc:
            logger.exception("Unexpected chat error")
            error = f"{type(exc).__name__}: {exc}"
        finally:
            self._finish(Intent.CHAT, error)

        self._append(reply)
        return reply

    def generate_report(self) -> BusinessReport | None:
        if self.dataset is None:
            logger.info("Ignoring report request: no dataset uploaded")
            return None
        if not self._begin(Intent.REPORT):
            return None

        report: BusinessReport | None = None
        error: str | None = "Failed to generate business report"
        try:
            data = self._post("/generate-report", json={"csvData": self.dataset.to_wire()})
            report = data.get("report")
            if not isinstance(report, dict):
                raise UpstreamError("Failed to generate business report")
            error = None
        except PipelineError as exc:
            logger.error("Report generation error: %s", exc.message)
            error = exc.message
        except Exception as exc:
            logger.exception("Unexpected report generation error")
            error = f"{type(exc).__name__}: {exc}"
        finally:
            self._finish(Intent.REPORT, error)

        if error is not None or report is None:
            self._append(Message(type="bot", message=REPORT_FAILURE_REPLY))
            return None
        self._append(
            Message(type="report", message=REPORT_TITLE, report=report),
            Message(type="bot", message=REPORT_SUMMARY_REPLY),
        )
        return report

    def clear(self) -> None:
        with self._lock:
            self.conversation = [greeting_message()]
            if self.store is not None:
                self.store.clear_conversation()
            self._persist_conversation()

    def clear_dataset(self) -> None:
        self.dataset = None
        if self.store is not None:
            self.store.clear_dataset()

    def export_transcript(self) -> str:
        lines = []
        for message in self.conversation:
            sender = "You" if message.type == "user" else "Data Assistant"
            stamp = message.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
            lines.append(f"[{stamp}] {sender}: {message.message}")
        return "\n\n".join(lines)
