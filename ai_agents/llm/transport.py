"""
Conversation-thread transport used by the refinement orchestrator.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, runtime_checkable

from ai_agents.services.models import ModelParams


@dataclass
class TurnMessage:
    role: str
    text: str


@runtime_checkable
class AITransport(Protocol):
    """One persistent conversation thread per session; every turn appends to it."""

    def create_thread(self) -> str:
        ...

    def append_message(self, thread_id: str, text: str) -> None:
        ...

    def run_turn(self, thread_id: str, model_params: Optional[ModelParams] = None) -> None:
        ...

    def latest_responses(self, thread_id: str) -> List[TurnMessage]:
        ...


def latest_assistant_text(messages: List[TurnMessage]) -> str:
    for message in reversed(messages):
        if message.role in ("assistant", "model"):
            return message.text
    return ""
