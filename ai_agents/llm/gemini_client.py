# ai_agents/llm/gemini_client.py
from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import requests

from ai_agents.services.errors import RunFailed, TransportError, ValidationError
from ai_agents.services.models import ModelParams

from .rest import RetryConfig, default_session_factory, request_json
from .transport import TurnMessage

logger = logging.getLogger(__name__)


# --------------------------
# REST endpoints (v1beta)
# --------------------------
_GEN_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

# Default model name (stable + validated)
_DEFAULT_TEXT_MODEL = "gemini-2.0-flash"

_BLOCKED_FINISH_REASONS = ("SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII")


class GeminiError(TransportError):
    """Non-2xx or connection failure talking to the Gemini REST API."""


# --------------------------
# Text generation client
# --------------------------
@dataclass
class GeminiText:
    """
    Lightweight text-generation client for Gemini REST API.
    """

    api_key: Optional[str] = None
    model: str = _DEFAULT_TEXT_MODEL
    system_prompt: Optional[str] = None
    timeout: int = 60  # seconds
    retry: RetryConfig = field(default_factory=RetryConfig)
    session_factory: Callable[[], requests.Session] = default_session_factory

    def __post_init__(self) -> None:
        self.api_key = self.api_key or os.getenv("GEMINI_API_KEY")
        if not self.api_key:
            raise ValueError("GEMINI_API_KEY is not set")

    def generate(
        self,
        messages: Sequence[TurnMessage],
        *,
        temperature: float = 0.7,
        max_output_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> Dict:
        """Send a multi-turn conversation and return the raw generateContent response."""
        url = _GEN_URL.format(model=model or self.model)
        generation_config: Dict = {"temperature": temperature, "candidateCount": 1}
        if max_output_tokens:
            generation_config["maxOutputTokens"] = max_output_tokens
        payload: Dict = {
            "contents": [
                {"role": "model" if m.role in ("assistant", "model") else "user", "parts": [{"text": m.text}]}
                for m in messages
            ],
            "generationConfig": generation_config,
        }
        if self.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": self.system_prompt.strip()}]}
        return request_json(
            "POST",
            url,
            {"x-goog-api-key": self.api_key},
            payload,
            timeout=self.timeout,
            retry=self.retry,
            session_factory=self.session_factory,
            error_cls=GeminiError,
            service="Gemini",
        )


# --------------------------
# Thread transport
# --------------------------
class GeminiThreadTransport:
    """
    Thread transport for Gemini, which has no server-side threads.

    Each thread is an in-process message list; a turn re-sends the whole list.
    """

    def __init__(self, text_client: Optional[GeminiText] = None) -> None:
        self.text = text_client or GeminiText()
        self._threads: Dict[str, List[TurnMessage]] = {}
        self._lock = threading.Lock()

    def create_thread(self) -> str:
        thread_id = f"thread-{uuid.uuid4().hex}"
        with self._lock:
            self._threads[thread_id] = []
        return thread_id

    def append_message(self, thread_id: str, text: str) -> None:
        with self._lock:
            self._thread(thread_id).append(TurnMessage(role="user", text=text))

    def run_turn(self, thread_id: str, model_params: Optional[ModelParams] = None) -> None:
        params = model_params or ModelParams()
        with self._lock:
            history = list(self._thread(thread_id))

        data = self.text.generate(
            history,
            temperature=params.temperature,
            max_output_tokens=params.max_tokens,
            model=params.model if params.model and params.model.startswith("gemini") else None,
        )
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise RunFailed(str(feedback.get("blockReason") or "no_candidates"), details={"thread_id": thread_id})
        finish_reason = str(candidates[0].get("finishReason") or "")
        if finish_reason in _BLOCKED_FINISH_REASONS:
            raise RunFailed(finish_reason.lower(), details={"thread_id": thread_id})

        reply = _candidate_text(data)
        logger.debug("Gemini turn on %s finished (%s, %d chars)", thread_id, finish_reason or "?", len(reply))
        with self._lock:
            self._thread(thread_id).append(TurnMessage(role="assistant", text=reply))

    def latest_responses(self, thread_id: str) -> List[TurnMessage]:
        with self._lock:
            return list(self._thread(thread_id))

    def _thread(self, thread_id: str) -> List[TurnMessage]:
        try:
            return self._threads[thread_id]
        except KeyError as exc:
            raise ValidationError(f"thread {thread_id} not found", code="thread_not_found") from exc


def _candidate_text(data: Dict) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)
