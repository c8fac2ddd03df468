# ai_agents/llm/rest.py
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple, Type

import requests
from requests import Response

from ai_agents.services.errors import TransportError

logger = logging.getLogger(__name__)


# --------------------------
# Error / retry primitives
# --------------------------
@dataclass
class RetryConfig:
    max_attempts: int = 3
    backoff_factor: float = 1.6
    retry_statuses: Tuple[int, ...] = (408, 429, 500, 502, 503, 504)
    retry_connection_errors: bool = True


def default_session_factory() -> requests.Session:
    session = requests.Session()
    adapter = requests.adapters.HTTPAdapter(max_retries=0)  # manual retries
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def request_json(
    method: str,
    url: str,
    headers: Mapping[str, str],
    payload: Optional[Dict] = None,
    *,
    params: Optional[Mapping[str, object]] = None,
    timeout: int = 60,
    retry: Optional[RetryConfig] = None,
    session_factory: Callable[[], requests.Session] = default_session_factory,
    sleep: Callable[[float], None] = time.sleep,
    error_cls: Type[TransportError] = TransportError,
    service: str = "AI",
) -> Dict:
    """Call a JSON REST endpoint with retry on transient failures and richer errors."""

    retry = retry or RetryConfig()
    session = session_factory()
    request_headers = {"Content-Type": "application/json; charset=utf-8", **headers}
    body = json.dumps(payload) if payload is not None else None

    attempt = 0
    last_error: Optional[Exception] = None

    while attempt < retry.max_attempts:
        attempt += 1
        try:
            resp: Response = session.request(
                method,
                url,
                headers=request_headers,
                data=body,
                params=params,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            last_error = exc
            logger.warning("%s HTTP error on attempt %s: %s", service, attempt, exc)
            if attempt >= retry.max_attempts or not retry.retry_connection_errors:
                raise error_cls(f"{service} HTTP request failed", details={"error": str(exc)}) from exc
            sleep(retry.backoff_factor ** (attempt - 1))
            continue

        if resp.status_code // 100 == 2:
            return resp.json()

        # non-2xx handling
        try:
            data = resp.json()
        except ValueError:
            data = {"error": {"code": resp.status_code, "message": resp.text}}

        if resp.status_code in retry.retry_statuses and attempt < retry.max_attempts:
            sleep_for = retry.backoff_factor ** (attempt - 1)
            logger.info("Retrying %s call (%s) after status %s (sleep %.2fs)", service, attempt, resp.status_code, sleep_for)
            sleep(sleep_for)
            last_error = error_cls(f"{service} REST error", status_code=resp.status_code, details=data)
            continue

        raise error_cls(
            f"{service} REST error: {json.dumps(data, ensure_ascii=False)}",
            status_code=resp.status_code,
            details=data,
        )

    raise error_cls(
        f"{service} request failed after retries",
        details={"last_error": str(last_error) if last_error else None},
    )
