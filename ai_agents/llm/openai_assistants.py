# ai_agents/llm/openai_assistants.py
from __future__ import annotations

import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

import requests

from ai_agents.services.errors import RunFailed, RunTimeout, TransportError
from ai_agents.services.models import ModelParams

from .rest import RetryConfig, default_session_factory, request_json
from .transport import TurnMessage

logger = logging.getLogger(__name__)


# --------------------------
# REST endpoints (Assistants v2)
# --------------------------
_BASE_URL = "https://api.openai.com/v1"
_DEFAULT_MODEL = "o4-mini"
_DEFAULT_ASSISTANT_NAME = "Refinement Assistant"

_TERMINAL_STATUSES = ("completed", "failed", "cancelled", "expired", "incomplete", "requires_action")
_WRITE_RETRY_STATUSES = (429,)
_REASONING_MODEL_PATTERN = re.compile(r"^(o\d|gpt-5)")


def is_reasoning_model(model: Optional[str]) -> bool:
    return bool(model) and bool(_REASONING_MODEL_PATTERN.match(model.strip().lower()))


class OpenAIError(TransportError):
    """Non-2xx or connection failure talking to the OpenAI REST API."""


@dataclass
class PollConfig:
    """Run polling starts at ``interval`` and grows by ``backoff_factor`` up to ``max_interval``."""

    interval: float = 1.0
    backoff_factor: float = 1.5
    max_interval: float = 5.0
    timeout: float = 300.0


@dataclass
class OpenAIAssistantsClient:
    """
    Thread transport backed by the OpenAI Assistants API.

    One assistant is shared by every thread this client creates; it is looked up by name
    or created on first use. Per-session context travels in thread messages.
    """

    api_key: Optional[str] = None
    model: str = _DEFAULT_MODEL
    assistant_name: str = _DEFAULT_ASSISTANT_NAME
    assistant_instructions: str = ""
    base_url: str = _BASE_URL
    timeout: int = 60  # seconds, per HTTP call
    retry: RetryConfig = field(default_factory=RetryConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    session_factory: Callable[[], requests.Session] = default_session_factory
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self.api_key = self.api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY is not set")
        self._assistant_id: Optional[str] = None
        self._assistant_lock = threading.Lock()
        # a write whose response was lost may already be stored; only retry outright rejections
        self._write_retry = replace(self.retry, retry_statuses=_WRITE_RETRY_STATUSES, retry_connection_errors=False)

    # ----------------------------- assistant ------------------------------ #

    def get_or_create_assistant(self) -> str:
        with self._assistant_lock:
            if self._assistant_id:
                return self._assistant_id

            listing = self._call("GET", "/assistants", params={"limit": 100, "order": "desc"})
            for assistant in listing.get("data") or []:
                if assistant.get("name") == self.assistant_name:
                    self._assistant_id = assistant["id"]
                    logger.info("Reusing assistant %s (%s)", self.assistant_name, self._assistant_id)
                    return self._assistant_id

            created = self._call(
                "POST",
                "/assistants",
                {
                    "name": self.assistant_name,
                    "instructions": self.assistant_instructions,
                    "model": self.model,
                },
            )
            self._assistant_id = created["id"]
            logger.info("Created assistant %s (%s)", self.assistant_name, self._assistant_id)
            return self._assistant_id

    # ----------------------------- transport ------------------------------ #

    def create_thread(self) -> str:
        thread = self._call("POST", "/threads", {})
        logger.debug("Created thread %s", thread.get("id"))
        return thread["id"]

    def append_message(self, thread_id: str, text: str) -> None:
        logger.debug("Adding message to thread %s (%d chars)", thread_id, len(text))
        self._call("POST", f"/threads/{thread_id}/messages", {"role": "user", "content": text})

    def run_turn(self, thread_id: str, model_params: Optional[ModelParams] = None) -> None:
        assistant_id = self.get_or_create_assistant()
        payload: Dict[str, object] = {"assistant_id": assistant_id}
        if model_params is not None:
            if model_params.model:
                payload["model"] = model_params.model
            # reasoning models reject temperature
            if not is_reasoning_model(model_params.model or self.model):
                payload["temperature"] = model_params.temperature
            if model_params.max_tokens:
                payload["max_completion_tokens"] = model_params.max_tokens

        run = self._call("POST", f"/threads/{thread_id}/runs", payload)
        run_id = run["id"]
        logger.debug("Started run %s on thread %s", run_id, thread_id)

        deadline = self.clock() + self.poll.timeout
        interval = self.poll.interval
        status = run.get("status")
        while status not in _TERMINAL_STATUSES:
            if self.clock() + interval > deadline:
                raise RunTimeout(
                    f"run {run_id} did not finish within {self.poll.timeout:.0f}s",
                    details={"thread_id": thread_id, "run_id": run_id, "status": status},
                )
            self.sleep(interval)
            interval = min(interval * self.poll.backoff_factor, self.poll.max_interval)
            run = self._call("GET", f"/threads/{thread_id}/runs/{run_id}")
            status = run.get("status")

        if status != "completed":
            last_error = run.get("last_error") or {}
            raise RunFailed(
                str(status),
                details={"thread_id": thread_id, "run_id": run_id, "last_error": last_error},
            )

    def latest_responses(self, thread_id: str) -> List[TurnMessage]:
        # newest page first, then flipped so callers read oldest to newest
        listing = self._call("GET", f"/threads/{thread_id}/messages", params={"order": "desc", "limit": 100})
        messages: List[TurnMessage] = []
        for item in reversed(listing.get("data") or []):
            messages.append(TurnMessage(role=str(item.get("role") or ""), text=_message_text(item)))
        return messages

    # ----------------------------- helpers -------------------------------- #

    def _call(self, method: str, path: str, payload: Optional[Dict] = None, *, params: Optional[Dict] = None) -> Dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "assistants=v2",
        }
        return request_json(
            method,
            f"{self.base_url}{path}",
            headers,
            payload,
            params=params,
            timeout=self.timeout,
            retry=self.retry if method == "GET" else self._write_retry,
            session_factory=self.session_factory,
            sleep=self.sleep,
            error_cls=OpenAIError,
            service="OpenAI",
        )


def _message_text(item: Dict) -> str:
    for block in item.get("content") or []:
        if block.get("type", "text") == "text":
            return str((block.get("text") or {}).get("value") or "")
    return ""
