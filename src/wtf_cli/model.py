"""Language-model client. Remote summarization over a chat-completions API.

Sends one prompt payload per call, classifies failures by kind and retries
the ones that waiting can fix.
"""

from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import httpx

from .config import DEFAULT_BASE_URL, DEFAULT_MAX_ATTEMPTS, DEFAULT_MODEL, DEFAULT_TIMEOUT
from .prompts import SYSTEM_PROMPTS, Task

logger = logging.getLogger(__name__)

BACKOFF_BASE = 1.0  # seconds before the second attempt
BACKOFF_MAX = 30.0


class ErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    INVALID_RESPONSE = "invalid_response"


RETRYABLE = frozenset({ErrorKind.NETWORK, ErrorKind.RATE_LIMITED})


class ModelError(Exception):
    """Error communicating with the model."""

    def __init__(self, kind: ErrorKind, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after
        self.attempts = 1

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE


@dataclass(frozen=True)
class PromptPayload:
    task: Task
    subject_ref: str
    content: str


@dataclass(frozen=True)
class SummaryResult:
    subject_ref: str
    text: str
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_ref": self.subject_ref,
            "text": self.text,
            "truncated": self.truncated,
        }


class SummaryClient:
    """Client for an OpenAI-compatible chat-completions endpoint.

    Holds no per-call state, so one instance can serve many worker threads.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        temperature: float = 0.7,
        backoff_base: float = BACKOFF_BASE,
        backoff_max: float = BACKOFF_MAX,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.temperature = temperature
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_config(cls, config) -> "SummaryClient":
        return cls(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            timeout=config.request_timeout,
            max_attempts=config.max_attempts,
            temperature=config.temperature,
        )

    def summarize(self, payload: PromptPayload) -> SummaryResult:
        """Summarize one payload, retrying rate limits and network errors.

        Raises ModelError once attempts run out or on a non-retryable error;
        ``attempts`` on the error tells how many requests were made.
        """
        attempt = 1
        while True:
            try:
                text = self.complete(SYSTEM_PROMPTS[payload.task], payload.content)
                return SummaryResult(subject_ref=payload.subject_ref, text=text.strip())
            except ModelError as e:
                e.attempts = attempt
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.backoff_delay(attempt, e.retry_after)
                logger.warning(
                    "%s for %s (attempt %d/%d), retrying in %.1fs",
                    e.kind.value, payload.subject_ref[:12], attempt, self.max_attempts, delay,
                )
                self._sleep(delay)
                attempt += 1

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Exponential backoff with jitter, honoring Retry-After up to the cap."""
        delay = min(self.backoff_max, self.backoff_base * 2 ** (attempt - 1))
        delay += random.uniform(0, delay / 2)
        if retry_after:
            delay = max(delay, retry_after)
        return min(delay, self.backoff_max)

    def complete(self, system: str, prompt: str) -> str:
        """Single chat-completions request. Returns the first choice's text."""
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
        }

        try:
            resp = self._client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ModelError(ErrorKind.NETWORK, f"Request timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise ModelError(ErrorKind.NETWORK, f"Cannot reach {self.base_url}: {e}") from e

        if resp.status_code != 200:
            raise _status_error(resp)

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (json.JSONDecodeError, ValueError) as e:
            raise ModelError(
                ErrorKind.INVALID_RESPONSE, f"Model returned invalid JSON: {resp.text[:200]}"
            ) from e
        except (KeyError, IndexError, TypeError) as e:
            raise ModelError(
                ErrorKind.INVALID_RESPONSE, f"No choices in model response: {str(data)[:200]}"
            ) from e
        if not isinstance(content, str):
            raise ModelError(ErrorKind.INVALID_RESPONSE, "Model response content is not text")
        logger.debug("Model returned %d chars", len(content))
        return content

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SummaryClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _status_error(resp: httpx.Response) -> ModelError:
    """Map a non-200 response to a ModelError of the right kind."""
    status = resp.status_code
    detail = f"API returned {status}: {resp.text[:200]}"
    if status == 429:
        return ModelError(ErrorKind.RATE_LIMITED, detail, retry_after=_retry_after(resp))
    if status in (401, 403):
        return ModelError(ErrorKind.AUTH, detail)
    if status >= 500 or status in (408, 409):
        return ModelError(ErrorKind.NETWORK, detail)
    return ModelError(ErrorKind.INVALID_REQUEST, detail)


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
