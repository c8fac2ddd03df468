"""
Refinement orchestrator: the phase state machine behind each refinement round.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from ai_agents.llm.transport import AITransport, latest_assistant_text

from . import prompt_builder
from .errors import ParseError, ValidationError
from .models import (
    PHASE_FINALIZING,
    PHASE_QUESTIONING,
    PHASE_SUGGESTING,
    QUESTIONING_KEY,
    SUGGESTING_KEY,
    AppConfig,
    FinalizeResult,
    ModelParams,
    Question,
    RefinementRequest,
    RefinementSession,
    Suggestion,
    TechStack,
    answer_key,
)
from .response_parser import parse_sections, parse_structured
from .session_store import SessionStore

logger = logging.getLogger(__name__)

SuggestionLike = Union[Suggestion, Mapping[str, object]]


class ConfigProvider(Protocol):
    def load_config(self) -> AppConfig:
        ...


class StaticConfigProvider:
    """Serves one fixed AppConfig; handy for scripts and tests."""

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self._config = config or AppConfig()

    def load_config(self) -> AppConfig:
        return self._config


class RefinementAgent:
    """
    Drives multi-role refinement sessions against a thread-based AI transport.

    Every turn of a session goes to the same thread. Store access is kept to short
    read/commit steps; the AI round-trip runs between them with only the session's own
    single-writer lock held, so a slow turn never blocks other sessions.
    """

    def __init__(
        self,
        transport: AITransport,
        *,
        store: Optional[SessionStore] = None,
        config_provider: Optional[ConfigProvider] = None,
    ) -> None:
        self._transport = transport
        self._store = store if store is not None else SessionStore()
        self._config_provider = config_provider or StaticConfigProvider()

    @property
    def store(self) -> SessionStore:
        return self._store

    # ----------------------------- operations ----------------------------- #

    def start(
        self,
        story: str,
        roles: Sequence[str],
        *,
        model_params: Optional[ModelParams] = None,
        tech_stack: Optional[TechStack] = None,
    ) -> RefinementSession:
        story = (story or "").strip()
        selected_roles = [str(role) for role in roles or [] if str(role).strip()]
        if not selected_roles:
            raise ValidationError("at least one role must be selected", code="no_roles")
        if not story:
            raise ValidationError("initial user story is required", code="empty_story")

        config = self._config_provider.load_config()
        request = RefinementRequest(
            initial_user_story=story,
            selected_roles=selected_roles,
            model_params=model_params or config.model_params,
            tech_stack=tech_stack or TechStack(),
        )
        logger.info("Starting refinement session for roles %s", ", ".join(selected_roles))

        opening = prompt_builder.build_opening_context(
            config.product_context,
            story,
            selected_roles,
            config.role_prompts,
            config.phase_prompts,
            config.phase_format_examples,
            tech_stack=request.tech_stack,
        )
        thread_id = self._transport.create_thread()
        raw = self._exchange(thread_id, opening, request.model_params)
        questions = parse_structured(raw).as_questions()

        session = RefinementSession(
            session_id=self._store.new_id(),
            thread_id=thread_id,
            request=request,
            user_story=story,
            role_prompts=dict(config.role_prompts),
            phase_prompts=dict(config.phase_prompts),
            phase_format_examples={k: list(v) for k, v in config.phase_format_examples.items()},
        )
        session.set_questions(questions)
        session.record_history(f"[Initial user story] {story}")
        self._store.create(session)
        logger.info("Session %s started with %d question group(s)", session.session_id, len(questions))
        return session

    def get_session(self, session_id: str) -> RefinementSession:
        return self._store.get(session_id)

    def submit_answers_and_continue(
        self,
        session_id: str,
        answers: Mapping[str, str],
        additional_info: Optional[str] = None,
    ) -> RefinementSession:
        return self._submit_answers(session_id, answers, additional_info, QUESTIONING_KEY)

    def submit_answers_and_get_suggestions(
        self,
        session_id: str,
        answers: Mapping[str, str],
        additional_info: Optional[str] = None,
    ) -> RefinementSession:
        return self._submit_answers(session_id, answers, additional_info, SUGGESTING_KEY)

    def accept_suggestions(
        self,
        session_id: str,
        accepted: Iterable[SuggestionLike],
        next_phase: str,
        additional_info: Optional[str] = None,
    ) -> Tuple[RefinementSession, List[Suggestion]]:
        accepted_list = [_coerce_suggestion(item) for item in accepted or []]
        phase_key = SUGGESTING_KEY if str(next_phase or "").strip().lower() == SUGGESTING_KEY else QUESTIONING_KEY

        with self._store.session_lock(session_id):
            session = self._store.get(session_id)
            logger.info(
                "Session %s: %d suggestion(s) accepted, next phase %s",
                session_id,
                len(accepted_list),
                phase_key,
            )
            self._transport.append_message(session.thread_id, prompt_builder.build_accepted_suggestions(accepted_list))

            instruction = prompt_builder.build_phase_instruction(
                phase_key,
                session.request.selected_roles,
                session.role_prompts,
                session.phase_prompts,
                session.phase_format_examples,
                additional_info,
            )
            raw = self._exchange(session.thread_id, instruction, session.request.model_params)
            reply = parse_structured(raw)

            def commit(s: RefinementSession) -> None:
                s.record_history(prompt_builder.build_accepted_suggestions(accepted_list))
                _record_additional_info(s, additional_info)
                if phase_key == SUGGESTING_KEY:
                    s.set_suggestions(reply.as_suggestions())
                else:
                    s.set_questions(reply.as_questions())

            updated = self._store.update(session_id, commit)
        return updated, accepted_list

    def finalize(
        self,
        session_id: str,
        current_phase: Optional[str] = None,
        current_answers: Optional[Mapping[str, str]] = None,
        current_suggestion_keys: Optional[Sequence[str]] = None,
        modification_note: Optional[str] = None,
    ) -> FinalizeResult:
        """
        Ask for the refined story and acceptance criteria without changing the stored phase.

        May be called repeatedly; each call can add a modification note to the same thread first.
        """
        phase = str(current_phase or "").strip().upper()
        answers = dict(current_answers or {})
        suggestion_keys = list(current_suggestion_keys or [])
        note = (modification_note or "").strip()

        with self._store.session_lock(session_id):
            session = self._store.get(session_id)
            thread_id = session.thread_id
            notes: List[str] = []

            if phase == PHASE_QUESTIONING and answers:
                transcript = prompt_builder.build_answer_transcript(session.questions, answers)
                if transcript.strip():
                    self._transport.append_message(thread_id, transcript)
                    notes.append(transcript)
            elif phase == PHASE_SUGGESTING and suggestion_keys:
                chosen = _resolve_suggestion_keys(session.suggestions, suggestion_keys)
                accepted_text = prompt_builder.build_accepted_suggestions(chosen)
                self._transport.append_message(thread_id, accepted_text)
                notes.append(accepted_text)

            if note:
                self._transport.append_message(thread_id, prompt_builder.build_modification_note(note))

            raw = self._exchange(thread_id, prompt_builder.build_finalize_instruction(), session.request.model_params)
            if not raw.strip():
                raise ParseError("AI did not return any content", raw=raw)
            sections = parse_sections(raw)

            def commit(s: RefinementSession) -> None:
                for entry in notes:
                    s.record_history(entry)
                if note:
                    s.modification_suggestion = note
                    s.record_history(prompt_builder.build_modification_note(note))
                s.record_history(f"[{PHASE_FINALIZING}] {sections.user_story}")

            self._store.update(session_id, commit)

        logger.info("Session %s finalized with %d acceptance criteria", session_id, len(sections.acceptance_criteria))
        return FinalizeResult(
            user_story=sections.user_story,
            acceptance_criteria=sections.acceptance_criteria,
            raw=raw,
        )

    # ----------------------------- helpers -------------------------------- #

    def _submit_answers(
        self,
        session_id: str,
        answers: Mapping[str, str],
        additional_info: Optional[str],
        phase_key: str,
    ) -> RefinementSession:
        answers = {str(k): str(v) for k, v in (answers or {}).items()}

        with self._store.session_lock(session_id):
            session = self._store.get(session_id)
            transcript = prompt_builder.build_answer_transcript(session.questions, answers)

            def record_answers(s: RefinementSession) -> None:
                _apply_answers(s.questions, answers)
                s.record_history(transcript)
                _record_additional_info(s, additional_info)

            # Answers are kept on the current questions even if the turn below fails.
            session = self._store.update(session_id, record_answers)
            if transcript.strip():
                self._transport.append_message(session.thread_id, transcript)

            # pick up prompt edits made between rounds
            config = self._config_provider.load_config()
            instruction = prompt_builder.build_phase_instruction(
                phase_key,
                session.request.selected_roles,
                config.role_prompts,
                config.phase_prompts,
                config.phase_format_examples,
                additional_info,
            )
            logger.info("Session %s: requesting %s round", session_id, phase_key)
            raw = self._exchange(session.thread_id, instruction, session.request.model_params)
            reply = parse_structured(raw)

            def commit(s: RefinementSession) -> None:
                s.role_prompts = dict(config.role_prompts)
                s.phase_prompts = dict(config.phase_prompts)
                s.phase_format_examples = {k: list(v) for k, v in config.phase_format_examples.items()}
                s.record_history(f"[Requested {phase_key} round]")
                if phase_key == SUGGESTING_KEY:
                    s.set_suggestions(reply.as_suggestions())
                else:
                    s.set_questions(reply.as_questions())

            return self._store.update(session_id, commit)

    def _exchange(self, thread_id: str, instruction: str, model_params: Optional[ModelParams]) -> str:
        self._transport.append_message(thread_id, instruction)
        self._transport.run_turn(thread_id, model_params)
        raw = latest_assistant_text(self._transport.latest_responses(thread_id))
        logger.debug("AI raw response on %s: %s", thread_id, raw)
        return raw


def _apply_answers(questions: List[Question], answers: Mapping[str, str]) -> None:
    for question in questions:
        given = [answers[key] for key in question.keys() if key in answers]
        if given:
            question.answer = "\n".join(given)


def _record_additional_info(session: RefinementSession, additional_info: Optional[str]) -> None:
    info = (additional_info or "").strip()
    session.additional_info = info
    if info:
        session.record_history(f"[Supplementary info] {info}")


def _resolve_suggestion_keys(suggestions: Sequence[Suggestion], keys: Sequence[str]) -> List[Suggestion]:
    chosen: List[Suggestion] = []
    for key in keys:
        for suggestion in suggestions:
            for prompt in suggestion.prompt:
                if answer_key(suggestion.role, prompt) == key:
                    chosen.append(Suggestion(role=suggestion.role, prompt=[prompt]))
    return chosen


def _coerce_suggestion(item: SuggestionLike) -> Suggestion:
    if isinstance(item, Suggestion):
        return item
    if isinstance(item, Mapping):
        return Suggestion.from_dict(item)
    raise ValidationError(f"invalid accepted suggestion: {item!r}", code="invalid_suggestion")
