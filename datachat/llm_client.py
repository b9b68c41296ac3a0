from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import openai
import requests
from openai import OpenAI

from datachat.errors import UpstreamAuthError, UpstreamError, UpstreamRateLimited, UpstreamTransportError

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "Sorry, I couldn't generate a response."

DEFAULT_GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float
    max_output_tokens: int


# Chat answers are looser and shorter; reports need stable structure and room for JSON.
CHAT_GENERATION = GenerationConfig(temperature=0.7, max_output_tokens=1000)
REPORT_GENERATION = GenerationConfig(temperature=0.3, max_output_tokens=2000)


class ModelGateway(ABC):
    """Single integration point to the external text-generation service.

    One attempt per call: failures are classified and raised, never retried.
    """

    @abstractmethod
    def generate(self, prompt: str, config: GenerationConfig) -> str:
        raise NotImplementedError


def _raise_for_status(status_code: int, provider: str, detail: Any = None) -> None:
    logger.error("%s API error: status=%s detail=%s", provider, status_code, detail)
    if status_code == 429:
        raise UpstreamRateLimited()
    if status_code in (401, 403):
        raise UpstreamAuthError()
    raise UpstreamError()


def _first_candidate_text(payload: Any) -> str:
    try:
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return NO_RESPONSE_TEXT
    if not isinstance(text, str) or not text:
        return NO_RESPONSE_TEXT
    return text


class GeminiGateway(ModelGateway):
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_GEMINI_MODEL,
        api_base: str = DEFAULT_GEMINI_API_BASE,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{quote(self.model)}:generateContent"

    def generate(self, prompt: str, config: GenerationConfig) -> str:
        if not self.api_key:
            logger.error("GEMINI_API_KEY is not set.")
            raise UpstreamAuthError()

        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": config.temperature,
                "maxOutputTokens": config.max_output_tokens,
            },
        }
        try:
            # The key travels in a header so it never shows up in URLs or access logs.
            response = self.session.post(
                self.endpoint,
                json=body,
                headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
            )
        except requests.RequestException as exc:
            logger.error("Gemini request failed: %s", exc)
            raise UpstreamTransportError() from exc

        if not response.ok:
            try:
                detail = response.json()
            except ValueError:
                detail = response.text[:500]
            _raise_for_status(response.status_code, "Gemini", detail)

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Gemini returned a non-JSON body: %.200s", response.text)
            raise UpstreamError() from exc
        return _first_candidate_text(payload)


class OpenAIGateway(ModelGateway):
    def __init__(self, api_key: str, model: str = DEFAULT_OPENAI_MODEL, client: OpenAI | None = None) -> None:
        self.api_key = api_key
        self.model = model
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                logger.error("OPENAI_API_KEY is not set.")
                raise UpstreamAuthError()
            self._client = OpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    def generate(self, prompt: str, config: GenerationConfig) -> str:
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self.model,
                temperature=config.temperature,
                max_tokens=config.max_output_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.APIStatusError as exc:
            _raise_for_status(exc.status_code, "OpenAI", exc.message)
        except openai.APIConnectionError as exc:
            logger.error("OpenAI request failed: %s", exc)
            raise UpstreamTransportError() from exc
        except openai.OpenAIError as exc:
            logger.error("OpenAI request failed: %s", exc)
            raise UpstreamError() from exc

        if not response.choices:
            return NO_RESPONSE_TEXT
        return response.choices[0].message.content or NO_RESPONSE_TEXT


def create_gateway_from_env() -> ModelGateway:
    provider = os.getenv("AI_PROVIDER", "gemini").strip().lower()

    if provider == "gemini":
        return GeminiGateway(
            api_key=os.getenv("GEMINI_API_KEY", "").strip(),
            model=os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL).strip(),
            api_base=os.getenv("GEMINI_API_BASE", DEFAULT_GEMINI_API_BASE).strip(),
        )

    if provider == "openai":
        return OpenAIGateway(
            api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            model=os.getenv("OPENAI_MODEL", DEFAULT_OPENAI_MODEL).strip(),
        )

    logger.error("Unsupported AI_PROVIDER %r. Use 'gemini' or 'openai'.", provider)
    raise UpstreamAuthError()
