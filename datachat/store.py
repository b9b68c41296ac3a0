from __future__ import annotations

import json
import logging
import os
from hashlib import sha256
from pathlib import Path
from typing import Any

import redis
from pydantic import ValidationError

from datachat.models import DatasetDescriptor, Message

logger = logging.getLogger(__name__)

HISTORY_KEY = "chat-csv-history"
DATASET_KEY = "chat-csv-data"
DEFAULT_STORE_DIR = Path("data_store/sessions")


class ConversationStore:
    """
    Key-value persistence for one session's conversation and dataset.

    Values are JSON documents under fixed keys. Files in ``base_dir`` are the
    default backend; when ``REDIS_URL`` is set and reachable, Redis is used
    instead. Writes are synchronous and unconditional.
    """

    def __init__(self, namespace: str = "default", base_dir: Path | str | None = None, redis_url: str | None = None) -> None:
        self.namespace = namespace
        self.base_dir = Path(base_dir or os.getenv("DATACHAT_STORE_DIR") or DEFAULT_STORE_DIR)
        self._redis = None
        redis_url = redis_url if redis_url is not None else os.getenv("REDIS_URL")
        if redis_url:
            try:
                client = redis.Redis.from_url(redis_url, decode_responses=True)
                client.ping()
                self._redis = client
            except (redis.RedisError, ValueError) as exc:
                logger.warning("Redis unavailable at %s, using file store: %s", redis_url, exc)

    def _key(self, key: str) -> str:
        return f"datachat:{self.namespace}:{key}"

    def _file_path(self, key: str) -> Path:
        safe = sha256(self._key(key).encode("utf-8")).hexdigest()
        return self.base_dir / f"{safe}.json"

    def _get(self, key: str) -> str | None:
        if self._redis is not None:
            return self._redis.get(self._key(key))
        path = self._file_path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _set(self, key: str, payload: str) -> None:
        if self._redis is not None:
            self._redis.set(self._key(key), payload)
            return
        path = self._file_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)

    def _delete(self, key: str) -> None:
        if self._redis is not None:
            self._redis.delete(self._key(key))
            return
        self._file_path(key).unlink(missing_ok=True)

    def _load_json(self, key: str) -> Any:
        raw = self._get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Failed to load %s: %s", key, exc)
            return None

    def save_conversation(self, messages: list[Message]) -> None:
        payload = [message.to_wire() for message in messages]
        self._set(HISTORY_KEY, json.dumps(payload, ensure_ascii=False))

    def load_conversation(self) -> list[Message] | None:
        data = self._load_json(HISTORY_KEY)
        if data is None:
            return None
        try:
            return [Message.model_validate(item) for item in data]
        except (ValidationError, TypeError) as exc:
            logger.error("Failed to load chat history: %s", exc)
            return None

    def clear_conversation(self) -> None:
        self._delete(HISTORY_KEY)

    def save_dataset(self, dataset: DatasetDescriptor) -> None:
        self._set(DATASET_KEY, json.dumps(dataset.to_wire(), ensure_ascii=False))

    def load_dataset(self) -> DatasetDescriptor | None:
        data = self._load_json(DATASET_KEY)
        if data is None:
            return None
        try:
            return DatasetDescriptor.model_validate(data)
        except ValidationError as exc:
            logger.error("Failed to load CSV data: %s", exc)
            return None

    def clear_dataset(self) -> None:
        self._delete(DATASET_KEY)
