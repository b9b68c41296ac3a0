import json
import threading
from pathlib import Path
from typing import Any

import httpx
import pytest
import requests
from fastapi.testclient import TestClient
from fakes import FakeGateway, FakeResponse, make_dataset

import datachat.main as main
from datachat.errors import UpstreamError, UpstreamRateLimited
from datachat.llm_schemas import fallback_report
from datachat.session import (
    CHAT_FAILURE_REPLY,
    GREETING,
    REPORT_FAILURE_REPLY,
    REPORT_TITLE,
    ChatSession,
    Intent,
    RequestState,
)
from datachat.store import ConversationStore

client = TestClient(main.app)


def _session(tmp_path: Path, http: Any = client) -> ChatSession:
    store = ConversationStore(base_dir=tmp_path, redis_url="")
    return ChatSession(http=http, store=store, base_url="")


def test_new_session_starts_with_greeting(tmp_path: Path) -> None:
    session = _session(tmp_path)
    assert len(session.conversation) == 1
    assert session.conversation[0].message == GREETING
    assert session.states == {Intent.CHAT: RequestState.IDLE, Intent.REPORT: RequestState.IDLE}


def test_clear_always_leaves_only_greeting(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "_gateway", FakeGateway(reply="answer"))
    session = _session(tmp_path)
    session.set_dataset(make_dataset())
    session.send_message("first")
    session.send_message("second")
    assert len(session.conversation) == 6

    for _ in range(2):
        session.clear()
        assert [(msg.type, msg.message) for msg in session.conversation] == [("bot", GREETING)]

    stored = session.store.load_conversation()
    assert stored is not None
    assert [(msg.type, msg.message) for msg in stored] == [("bot", GREETING)]


def test_send_message_appends_user_and_bot_turns(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = FakeGateway(reply="## Answer\n**Revenue** rose <script>x()</script>")
    monkeypatch.setattr(main, "_gateway", gateway)
    session = _session(tmp_path)
    session.set_dataset(make_dataset())

    reply = session.send_message("  How did revenue do?  ")
    assert reply is not None
    assert reply.message == "Answer\nRevenue rose"
    assert [msg.type for msg in session.conversation] == ["bot", "bot", "user", "bot"]
    assert session.conversation[2].message == "How did revenue do?"
    assert session.states[Intent.CHAT] is RequestState.SUCCEEDED

    prompt = gateway.calls[0][0]
    assert "Total Records: 1000" in prompt
    assert "Current user question: How did revenue do?" in prompt
    assert prompt.count("User: How did revenue do?") == 0


def test_empty_message_is_not_sent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = FakeGateway()
    monkeypatch.setattr(main, "_gateway", gateway)
    session = _session(tmp_path)
    assert session.send_message("   ") is None
    assert len(session.conversation) == 1
    assert gateway.calls == []
    assert session.states[Intent.CHAT] is RequestState.IDLE


def test_chat_failure_appends_visible_message(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "_gateway", FakeGateway(error=UpstreamRateLimited()))
    session = _session(tmp_path)
    reply = session.send_message("hello")
    assert reply is not None
    assert reply.message == CHAT_FAILURE_REPLY
    assert session.conversation[-1].message == CHAT_FAILURE_REPLY
    assert session.states[Intent.CHAT] is RequestState.FAILED
    assert "quota" in (session.errors[Intent.CHAT] or "")


def test_network_failure_appends_visible_message(tmp_path: Path) -> None:
    class _Offline:
        def post(self, url: str, **kwargs: Any) -> Any:
            raise requests.ConnectionError("offline")

    session = _session(tmp_path, http=_Offline())
    session.send_message("hello")
    assert session.conversation[-1].message == CHAT_FAILURE_REPLY
    assert session.states[Intent.CHAT] is RequestState.FAILED


def test_generate_report_appends_report_and_summary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "_gateway", FakeGateway(reply="no json here"))
    session = _session(tmp_path)
    session.set_dataset(make_dataset(row_count=1000))

    report = session.generate_report()
    assert report == fallback_report(1000, 3)
    assert [msg.type for msg in session.conversation][-2:] == ["report", "bot"]
    assert session.conversation[-2].message == REPORT_TITLE
    assert session.conversation[-2].report == report
    assert session.states[Intent.REPORT] is RequestState.SUCCEEDED


def test_generate_report_without_dataset_does_nothing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = FakeGateway()
    monkeypatch.setattr(main, "_gateway", gateway)
    session = _session(tmp_path)
    assert session.generate_report() is None
    assert gateway.calls == []
    assert len(session.conversation) == 1


def test_generate_report_failure_appends_apology(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "_gateway", FakeGateway(error=UpstreamRateLimited()))
    session = _session(tmp_path)
    session.set_dataset(make_dataset())
    assert session.generate_report() is None
    assert session.conversation[-1].message == REPORT_FAILURE_REPLY
    assert session.states[Intent.REPORT] is RequestState.FAILED


def test_history_sent_with_chat_excludes_current_turn(tmp_path: Path) -> None:
    captured: list[dict] = []

    class _Recorder:
        def post(self, url: str, **kwargs: Any) -> FakeResponse:
            captured.append(kwargs["json"])
            return FakeResponse(200, {"response": "ok"})

    session = _session(tmp_path, http=_Recorder())
    session.send_message("one")
    session.send_message("two")
    history = captured[1]["chatHistory"]
    assert [item["message"] for item in history] == [GREETING, "one", "ok"]
    assert captured[1]["csvData"] is None


def test_session_reload_restores_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "_gateway", FakeGateway(reply="answer"))
    session = _session(tmp_path)
    session.set_dataset(make_dataset())
    session.send_message("question")

    restored = _session(tmp_path)
    restored.load()
    assert restored.dataset == session.dataset
    assert [(m.type, m.message, m.timestamp) for m in restored.conversation] == [
        (m.type, m.message, m.timestamp) for m in session.conversation
    ]


def test_upload_sets_dataset_and_announces_it(tmp_path: Path) -> None:
    session = _session(tmp_path)
    dataset = session.upload("sales.csv", b"date,revenue,customer_id\n2025-01-01,10,C1\n")
    assert session.dataset == dataset
    assert dataset.row_count == 1
    assert 'analyzed your CSV file "sales.csv"' in session.conversation[-1].message
    assert session.store.load_dataset() == dataset


def test_export_transcript_labels_speakers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "_gateway", FakeGateway(reply="Sure."))
    session = _session(tmp_path)
    session.send_message("Hi there")
    transcript = session.export_transcript()
    blocks = transcript.split("\n\n")
    assert len(blocks) == 3
    assert blocks[0].endswith(f"Data Assistant: {GREETING}")
    assert blocks[1].endswith("You: Hi there")
    assert blocks[2].endswith("Data Assistant: Sure.")


def test_chat_and_report_are_tracked_independently(tmp_path: Path) -> None:
    chat_started = threading.Event()
    release_chat = threading.Event()
    report_body = {"report": fallback_report(1000, 3)}

    class _SlowChat:
        def __init__(self) -> None:
            self.paths: list[str] = []

        def post(self, url: str, **kwargs: Any) -> FakeResponse:
            self.paths.append(url)
            if url == "/chat":
                chat_started.set()
                assert release_chat.wait(timeout=5)
                return FakeResponse(200, {"response": "slow answer"})
            return FakeResponse(200, json.loads(json.dumps(report_body)))

    http = _SlowChat()
    session = _session(tmp_path, http=http)
    session.set_dataset(make_dataset())

    worker = threading.Thread(target=session.send_message, args=("long question",))
    worker.start()
    try:
        assert chat_started.wait(timeout=5)
        assert session.in_flight(Intent.CHAT)

        # Same intent is refused while in flight, other intent proceeds.
        assert session.send_message("impatient follow-up") is None
        assert session.generate_report() == report_body["report"]
        assert session.states[Intent.REPORT] is RequestState.SUCCEEDED
        assert session.in_flight(Intent.CHAT)
    finally:
        release_chat.set()
        worker.join(timeout=5)

    assert not session.in_flight(Intent.CHAT)
    assert session.states[Intent.CHAT] is RequestState.SUCCEEDED
    assert http.paths.count("/chat") == 1
    assert session.conversation[-1].message == "slow answer"


class _Unreachable:
    def __init__(self) -> None:
        self.calls = 0

    def post(self, url: str, **kwargs: Any) -> Any:
        self.calls += 1
        raise httpx.ConnectError("connection refused")


def test_unexpected_chat_error_still_finishes_request(tmp_path: Path) -> None:
    http = _Unreachable()
    session = _session(tmp_path, http=http)

    reply = session.send_message("hello")
    assert reply is not None
    assert reply.message == CHAT_FAILURE_REPLY
    assert session.conversation[-1].message == CHAT_FAILURE_REPLY
    assert session.states[Intent.CHAT] is RequestState.FAILED
    assert "ConnectError" in (session.errors[Intent.CHAT] or "")

    assert session.send_message("hello again") is not None
    assert http.calls == 2


def test_unexpected_report_error_still_finishes_request(tmp_path: Path) -> None:
    http = _Unreachable()
    session = _session(tmp_path, http=http)
    session.set_dataset(make_dataset())

    assert session.generate_report() is None
    assert session.conversation[-1].message == REPORT_FAILURE_REPLY
    assert session.states[Intent.REPORT] is RequestState.FAILED

    session.generate_report()
    assert http.calls == 2


@pytest.mark.parametrize("body", [{"status": "ok"}, {"csvData": {"schema": ["a", "a"], "rowCount": 1, "fileName": "x.csv"}}])
def test_upload_with_invalid_dataset_is_upstream_error(tmp_path: Path, body: dict) -> None:
    class _BadUpload:
        def post(self, url: str, **kwargs: Any) -> FakeResponse:
            return FakeResponse(200, body)

    session = _session(tmp_path, http=_BadUpload())
    with pytest.raises(UpstreamError):
        session.upload("sales.csv", b"a\n1\n")
    assert session.dataset is None
    assert len(session.conversation) == 1
