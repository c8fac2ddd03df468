import os
import sys
import threading
from typing import Dict, List, Optional, Union

import pytest

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from ai_agents.llm.transport import TurnMessage
from ai_agents.services.models import AppConfig, ModelParams, PhaseFormatExample

os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("OPENAI_API_KEY", "test-key")


class ScriptedTransport:
    """Thread transport double that answers each turn with the next queued reply."""

    def __init__(self) -> None:
        self.threads: Dict[str, List[TurnMessage]] = {}
        self.replies: List[Union[str, Exception]] = []
        self.turns: List[Optional[ModelParams]] = []
        # per-thread events a turn waits on before answering
        self.gates: Dict[str, threading.Event] = {}

    def queue(self, *replies: Union[str, Exception]) -> "ScriptedTransport":
        self.replies.extend(replies)
        return self

    def create_thread(self) -> str:
        thread_id = f"thread-{len(self.threads) + 1}"
        self.threads[thread_id] = []
        return thread_id

    def append_message(self, thread_id: str, text: str) -> None:
        self.threads[thread_id].append(TurnMessage(role="user", text=text))

    def run_turn(self, thread_id: str, model_params: Optional[ModelParams] = None) -> None:
        self.turns.append(model_params)
        gate = self.gates.get(thread_id)
        if gate is not None:
            gate.wait(timeout=5)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        self.threads[thread_id].append(TurnMessage(role="assistant", text=reply))

    def latest_responses(self, thread_id: str) -> List[TurnMessage]:
        return list(self.threads[thread_id])

    def user_messages(self, thread_id: str) -> List[str]:
        return [m.text for m in self.threads[thread_id] if m.role == "user"]


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        product_context="Focus timer for remote teams.",
        role_prompts={
            "PM": "Clarify goals and metrics.",
            "Designer": "Map the user flow.",
            "Engineer": "Surface technical constraints.",
        },
        phase_prompts={
            "questioning": "Each role asks its questions.",
            "suggesting": "Each role offers suggestions.",
        },
        phase_format_examples={
            "questioning": [
                PhaseFormatExample(role="PM", prompt=["Which metric matters?"]),
                PhaseFormatExample(role="Engineer", prompt=["Offline support?"]),
            ],
            "suggesting": [
                PhaseFormatExample(role="PM", prompt=["Track weekly usage."]),
                PhaseFormatExample(role="Designer", prompt=["Show a progress ring."]),
            ],
        },
        model_params=ModelParams(temperature=0.3, max_tokens=512),
    )
