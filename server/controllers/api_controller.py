import logging
import threading
from typing import Optional

from flask import Blueprint, current_app, jsonify, request

from ai_agents.services.errors import (
    ConfigError,
    ParseError,
    RefinementError,
    RunFailed,
    RunTimeout,
    TransportError,
    ValidationError,
)
from server.services.app_config_service import AppConfigService
from server.services.refinement_service import RefinementService, build_transport

logger = logging.getLogger(__name__)

api_blueprint = Blueprint("api", __name__)

# Built on first use from the app settings; tests assign their own.
refinement_service: Optional[RefinementService] = None
_service_lock = threading.Lock()


def _service() -> RefinementService:
    global refinement_service
    if refinement_service is None:
        with _service_lock:
            # every worker thread must share one session store
            if refinement_service is None:
                settings = current_app.config
                refinement_service = RefinementService(
                    AppConfigService(settings["APP_CONFIG_PATH"]),
                    transport=build_transport(settings),
                )
    return refinement_service


def _error_response(exc: RefinementError):
    body = {"error": str(exc), "code": exc.code}
    if isinstance(exc, ValidationError):
        status = 404 if exc.code == "session_not_found" else 400
    elif isinstance(exc, ParseError):
        body["raw_ai_response"] = exc.raw
        status = 502
    elif isinstance(exc, RunTimeout):
        status = 504
    elif isinstance(exc, RunFailed):
        body["status"] = exc.status
        status = 502
    elif isinstance(exc, TransportError):
        status = 502
    elif isinstance(exc, ConfigError):
        status = 500
    else:
        status = 500
    if status >= 500:
        logger.warning("Refinement request failed (%s): %s", exc.code, exc)
    return jsonify(body), status


@api_blueprint.errorhandler(RefinementError)
def handle_refinement_error(exc: RefinementError):
    return _error_response(exc)


@api_blueprint.get("/health")
def healthcheck():
    """Lightweight health check for uptime monitors."""
    return jsonify({"status": "ok"}), 200


@api_blueprint.post("/refine/start")
def start_refinement():
    payload = request.get_json(silent=True) or {}
    session = _service().start(payload)
    return jsonify(session), 200


@api_blueprint.get("/refine/sessions/<session_id>")
def get_refinement_session(session_id: str):
    return jsonify(_service().get_session(session_id)), 200


@api_blueprint.post("/refine/submit_answers_and_continue")
def submit_answers_and_continue():
    payload = request.get_json(silent=True) or {}
    session = _service().submit_answers_and_continue(payload)
    return jsonify(session), 200


@api_blueprint.post("/refine/submit_answers_and_get_suggestions")
def submit_answers_and_get_suggestions():
    payload = request.get_json(silent=True) or {}
    session = _service().submit_answers_and_get_suggestions(payload)
    return jsonify(session), 200


@api_blueprint.post("/refine/accept_suggestions")
def accept_suggestions():
    payload = request.get_json(silent=True) or {}
    return jsonify(_service().accept_suggestions(payload)), 200


@api_blueprint.post("/refine/finalize")
def finalize():
    payload = request.get_json(silent=True) or {}
    return jsonify(_service().finalize(payload)), 200


@api_blueprint.get("/config/app")
def get_app_config():
    return jsonify(_service().load_app_config()), 200


@api_blueprint.post("/config/app")
def save_app_config():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "config payload must be a JSON object"}), 400
    _service().save_app_config(payload)
    return jsonify({"message": "App config saved successfully"}), 200
