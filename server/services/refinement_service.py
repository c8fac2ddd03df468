from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from ai_agents.llm.gemini_client import GeminiText, GeminiThreadTransport
from ai_agents.llm.openai_assistants import OpenAIAssistantsClient, PollConfig
from ai_agents.llm.transport import AITransport
from ai_agents.services.errors import ValidationError
from ai_agents.services.models import AppConfig, ModelParams, TechStack
from ai_agents.services.prompt_builder import ASSISTANT_INSTRUCTIONS
from ai_agents.services.refinement_agent import RefinementAgent
from ai_agents.services.session_store import SessionStore

from .app_config_service import AppConfigService

logger = logging.getLogger(__name__)


def build_transport(settings: Mapping[str, Any]) -> AITransport:
    provider = str(settings.get("AI_PROVIDER") or "openai").lower()
    timeout = int(settings.get("AI_HTTP_TIMEOUT", 60))
    if provider == "gemini":
        return GeminiThreadTransport(GeminiText(timeout=timeout, system_prompt=ASSISTANT_INSTRUCTIONS))
    if provider == "openai":
        return OpenAIAssistantsClient(
            model=str(settings.get("AI_DEFAULT_MODEL") or "o4-mini"),
            assistant_name=str(settings.get("AI_ASSISTANT_NAME") or "Refinement Assistant"),
            assistant_instructions=ASSISTANT_INSTRUCTIONS,
            timeout=timeout,
            poll=PollConfig(
                interval=float(settings.get("AI_POLL_INTERVAL", 1.0)),
                max_interval=float(settings.get("AI_POLL_MAX_INTERVAL", 5.0)),
                timeout=float(settings.get("AI_RUN_TIMEOUT", 300.0)),
            ),
        )
    raise ValueError(f"Unsupported AI_PROVIDER '{provider}'")


class RefinementService:
    """
    Thin adaptor that exposes the RefinementAgent to the server layer: JSON payloads in,
    plain dicts out.
    """

    def __init__(
        self,
        config_service: AppConfigService,
        *,
        agent: Optional[RefinementAgent] = None,
        transport: Optional[AITransport] = None,
        store: Optional[SessionStore] = None,
    ) -> None:
        self._config_service = config_service
        if agent is None:
            if transport is None:
                raise ValueError("RefinementService needs either an agent or a transport")
            agent = RefinementAgent(transport, store=store, config_provider=config_service)
        self._agent = agent

    @property
    def agent(self) -> RefinementAgent:
        return self._agent

    def start(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        roles = payload.get("selected_roles") or []
        if isinstance(roles, str):
            roles = [roles]
        model_params = ModelParams.from_dict(payload["model_params"]) if payload.get("model_params") else None
        session = self._agent.start(
            str(payload.get("initial_user_story") or ""),
            list(roles),
            model_params=model_params,
            tech_stack=TechStack.from_dict(payload.get("tech_stack")),
        )
        return session.to_dict()

    def get_session(self, session_id: str) -> Dict[str, Any]:
        return self._agent.get_session(session_id).to_dict()

    def submit_answers_and_continue(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        session = self._agent.submit_answers_and_continue(
            _require_session_id(payload),
            _as_str_map(payload.get("answers")),
            payload.get("additional_info"),
        )
        return session.to_dict()

    def submit_answers_and_get_suggestions(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        session = self._agent.submit_answers_and_get_suggestions(
            _require_session_id(payload),
            _as_str_map(payload.get("answers")),
            payload.get("additional_info"),
        )
        return session.to_dict()

    def accept_suggestions(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        accepted = payload.get("accepted_suggestions") or []
        if not isinstance(accepted, list):
            raise ValidationError("accepted_suggestions must be a list")
        session, previous = self._agent.accept_suggestions(
            _require_session_id(payload),
            accepted,
            str(payload.get("next_phase") or ""),
            payload.get("additional_info"),
        )
        return {"session": session.to_dict(), "previous_result": [s.to_dict() for s in previous]}

    def finalize(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        keys = payload.get("current_suggestions") or []
        if not isinstance(keys, list):
            raise ValidationError("current_suggestions must be a list of keys")
        result = self._agent.finalize(
            _require_session_id(payload),
            str(payload.get("current_phase") or ""),
            _as_str_map(payload.get("current_answers")),
            [str(key) for key in keys],
            payload.get("modification_suggestion"),
        )
        return result.to_dict()

    def load_app_config(self) -> Dict[str, Any]:
        return self._config_service.load_config().to_dict()

    def save_app_config(self, payload: Mapping[str, Any]) -> None:
        self._config_service.save_config(AppConfig.from_dict(payload))


def _require_session_id(payload: Mapping[str, Any]) -> str:
    session_id = payload.get("session_id")
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError("session_id is required")
    return session_id.strip()


def _as_str_map(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError("answers must be an object keyed by '<role>_<prompt>'")
    return {str(k): str(v) for k, v in value.items() if v is not None}

