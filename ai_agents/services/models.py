"""
Shared data models for the refinement layer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

PHASE_QUESTIONING = "QUESTIONING"
PHASE_SUGGESTING = "SUGGESTING"
PHASE_FINALIZING = "FINALIZING"

# Phase keys used by the role/phase/format configuration maps.
QUESTIONING_KEY = "questioning"
SUGGESTING_KEY = "suggesting"


def _as_prompt_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


@dataclass
class ModelParams:
    temperature: float = 0.7
    max_tokens: Optional[int] = None  # no output cap unless configured
    model: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ModelParams":
        data = data or {}
        defaults = cls()
        try:
            temperature = float(data.get("temperature", defaults.temperature))
        except (TypeError, ValueError):
            temperature = defaults.temperature
        try:
            max_tokens: Optional[int] = int(data["max_tokens"]) if data.get("max_tokens") else None
        except (TypeError, ValueError):
            max_tokens = None
        model = data.get("model") or None
        return cls(temperature=temperature, max_tokens=max_tokens, model=str(model) if model else None)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"temperature": self.temperature}
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        if self.model:
            payload["model"] = self.model
        return payload


@dataclass
class TechStack:
    frontend: str = ""
    backend: str = ""
    agent: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "TechStack":
        data = data or {}
        return cls(
            frontend=str(data.get("frontend") or ""),
            backend=str(data.get("backend") or ""),
            agent=str(data.get("agent") or ""),
        )

    def is_empty(self) -> bool:
        return not (self.frontend or self.backend or self.agent)

    def to_dict(self) -> Dict[str, str]:
        return {"frontend": self.frontend, "backend": self.backend, "agent": self.agent}


@dataclass
class PhaseFormatExample:
    """A literal reply exemplar for one role, embedded verbatim in prompts."""

    role: str
    prompt: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PhaseFormatExample":
        return cls(role=str(data.get("role") or ""), prompt=_as_prompt_list(data.get("prompt")))

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "prompt": list(self.prompt)}


PhaseFormatExamples = Dict[str, List[PhaseFormatExample]]


def format_examples_from_dict(data: Optional[Mapping[str, Any]]) -> PhaseFormatExamples:
    examples: PhaseFormatExamples = {}
    for phase_key, items in (data or {}).items():
        examples[str(phase_key)] = [
            item if isinstance(item, PhaseFormatExample) else PhaseFormatExample.from_dict(item)
            for item in items or []
        ]
    return examples


def format_examples_to_dict(examples: Mapping[str, Sequence[PhaseFormatExample]]) -> Dict[str, List[Dict[str, Any]]]:
    return {phase_key: [item.to_dict() for item in items] for phase_key, items in examples.items()}


@dataclass
class AppConfig:
    product_context: str = ""
    role_prompts: Dict[str, str] = field(default_factory=dict)
    phase_prompts: Dict[str, str] = field(default_factory=dict)
    phase_format_examples: PhaseFormatExamples = field(default_factory=dict)
    model_params: ModelParams = field(default_factory=ModelParams)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AppConfig":
        return cls(
            product_context=str(data.get("product_context") or ""),
            role_prompts={str(k): str(v) for k, v in (data.get("role_prompts") or {}).items()},
            phase_prompts={str(k): str(v) for k, v in (data.get("phase_prompts") or {}).items()},
            phase_format_examples=format_examples_from_dict(data.get("phase_format_examples")),
            model_params=ModelParams.from_dict(data.get("model_params")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_context": self.product_context,
            "role_prompts": dict(self.role_prompts),
            "phase_prompts": dict(self.phase_prompts),
            "phase_format_examples": format_examples_to_dict(self.phase_format_examples),
            "model_params": self.model_params.to_dict(),
        }


@dataclass
class RefinementRequest:
    initial_user_story: str
    selected_roles: List[str] = field(default_factory=list)
    model_params: ModelParams = field(default_factory=ModelParams)
    tech_stack: TechStack = field(default_factory=TechStack)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RefinementRequest":
        roles = data.get("selected_roles") or []
        if isinstance(roles, str):
            roles = [roles]
        return cls(
            initial_user_story=str(data.get("initial_user_story") or ""),
            selected_roles=[str(role) for role in roles],
            model_params=ModelParams.from_dict(data.get("model_params")),
            tech_stack=TechStack.from_dict(data.get("tech_stack")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initial_user_story": self.initial_user_story,
            "selected_roles": list(self.selected_roles),
            "model_params": self.model_params.to_dict(),
            "tech_stack": self.tech_stack.to_dict(),
        }


@dataclass
class Question:
    role: str
    prompt: List[str] = field(default_factory=list)
    answer: Optional[str] = None

    def keys(self) -> List[str]:
        """Answer keys for each prompt, in the ``role_prompt`` form the client submits."""
        return [answer_key(self.role, p) for p in self.prompt]

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "prompt": list(self.prompt)}
        if self.answer is not None:
            payload["answer"] = self.answer
        return payload


@dataclass
class Suggestion:
    role: str
    prompt: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Suggestion":
        return cls(role=str(data.get("role") or ""), prompt=_as_prompt_list(data.get("prompt")))

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "prompt": list(self.prompt)}


def answer_key(role: str, prompt: str) -> str:
    return f"{role}_{prompt}"


@dataclass
class RefinementSession:
    session_id: str
    thread_id: str
    request: RefinementRequest
    user_story: str
    role_prompts: Dict[str, str] = field(default_factory=dict)
    phase_prompts: Dict[str, str] = field(default_factory=dict)
    phase_format_examples: PhaseFormatExamples = field(default_factory=dict)
    phase: str = PHASE_QUESTIONING
    questions: List[Question] = field(default_factory=list)
    suggestions: List[Suggestion] = field(default_factory=list)
    history: List[str] = field(default_factory=list)
    additional_info: str = ""
    modification_suggestion: str = ""

    def record_history(self, entry: str) -> None:
        entry = entry.strip()
        if entry:
            self.history.append(entry)

    def set_questions(self, questions: Sequence[Question]) -> None:
        self.questions = list(questions)
        self.suggestions = []
        self.phase = PHASE_QUESTIONING

    def set_suggestions(self, suggestions: Sequence[Suggestion]) -> None:
        self.suggestions = list(suggestions)
        self.questions = []
        self.phase = PHASE_SUGGESTING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "thread_id": self.thread_id,
            "request": self.request.to_dict(),
            "user_story": self.user_story,
            "role_prompts": dict(self.role_prompts),
            "phase_prompts": dict(self.phase_prompts),
            "phase_format_examples": format_examples_to_dict(self.phase_format_examples),
            "phase": self.phase,
            "questions": [q.to_dict() for q in self.questions],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "history": list(self.history),
            "additional_info": self.additional_info,
            "modification_suggestion": self.modification_suggestion,
        }


@dataclass
class FinalizeResult:
    user_story: str
    acceptance_criteria: List[str]
    raw: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_story": self.user_story,
            "ac": list(self.acceptance_criteria),
            "raw_ai_response": self.raw,
        }
