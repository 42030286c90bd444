"""OpenAI chat client used by every review request.

The rest of the package never imports ``openai``: requests go through
:meth:`LLMClient.generate`, which takes a list of conversations and returns
one :class:`LLMResponse` per conversation.

Replies are cached on disk (``data/cache/llm`` unless configured otherwise),
one JSON file per request named after the SHA-256 of the request payload.
Re-running a batch therefore costs nothing, while a batch whose text was
edited for a manual fix hashes differently and goes back to the API.

Exactly one API call is made per uncached request.  Retrying belongs to
:mod:`litreview_pipeline.retry`; SDK failures are re-raised as
:class:`LLMClientError` with the HTTP status attached so that
:mod:`litreview_pipeline.errors` can classify them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Sequence

import openai
from openai import OpenAI

logger = logging.getLogger(__name__)

Conversation = Sequence["LLMMessage | Mapping[str, str]"]


@dataclass(frozen=True)
class LLMClientConfig:
    model: str
    temperature: float = 0.0
    request_timeout: float = 120.0
    cache_dir: Optional[Path] = field(default_factory=lambda: Path("data/cache/llm"))
    base_url: Optional[str] = None

    def __post_init__(self) -> None:  # pragma: no cover - dataclass hook
        if not self.model:
            raise ValueError("llm.model must not be empty")
        if self.request_timeout <= 0:
            raise ValueError("llm.request_timeout must be > 0")


@dataclass(frozen=True)
class LLMMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class LLMResponse:
    """Reply text plus where it came from.

    ``metadata`` carries the model that answered and the ``finish_reason``
    reported by the API (``"length"`` means the reply was cut off).
    """

    content: str
    cached: bool
    metadata: Mapping[str, Any] | None = None


class LLMClientError(RuntimeError):
    """A request failed; ``status_code`` is the HTTP status when there was one."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LLMRateLimitError(LLMClientError):
    """HTTP 429: either a short-term rate limit or an exhausted quota."""


class LLMClient:
    """Cached wrapper around ``OpenAI().chat.completions``."""

    def __init__(
        self,
        config: LLMClientConfig,
        *,
        api_key: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.api_key = api_key
        self.logger = logger or logging.getLogger(__name__)
        self.cache_dir = Path(config.cache_dir) if config.cache_dir else None
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.cache_hits = 0
        self._client = OpenAI(api_key=api_key, base_url=config.base_url)
        self._lock = Lock()

    def generate(
        self,
        messages_batch: Sequence[Conversation],
        *,
        model: str | None = None,
        temperature: float | None = None,
    ) -> List[LLMResponse]:
        """Answer each conversation in ``messages_batch``, in order.

        ``model`` and ``temperature`` override the configured values for this
        call only.
        """

        request_model = model or self.config.model
        request_temperature = self.config.temperature if temperature is None else temperature
        return [
            self._answer(_request_payload(messages, request_model, request_temperature))
            for messages in messages_batch
        ]

    def _answer(self, payload: Dict[str, Any]) -> LLMResponse:
        entry = self._load(payload)
        if entry is not None:
            self.cache_hits += 1
            self.logger.debug("LLM cache hit (%d so far)", self.cache_hits)
            return LLMResponse(
                content=str(entry.get("content", "")),
                cached=True,
                metadata={"model": entry.get("model"), "finish_reason": entry.get("finish_reason")},
            )
        content, finish_reason = self._call(payload)
        self._store(payload, content, finish_reason)
        return LLMResponse(
            content=content,
            cached=False,
            metadata={"model": payload["model"], "finish_reason": finish_reason},
        )

    # ------------------------------------------------------------------
    # Disk cache
    # ------------------------------------------------------------------
    def _cache_file(self, payload: Mapping[str, Any]) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}.json"

    def _load(self, payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        path = self._cache_file(payload)
        if path is None:
            return None
        with self._lock:
            if not path.exists():
                return None
            try:
                entry = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                self.logger.warning("Ignoring unreadable LLM cache file %s", path)
                return None
        return entry if isinstance(entry, dict) else None

    def _store(self, payload: Mapping[str, Any], content: str, finish_reason: Optional[str]) -> None:
        path = self._cache_file(payload)
        if path is None:
            return
        entry = dict(payload, content=content, finish_reason=finish_reason)
        with self._lock:
            path.write_text(json.dumps(entry, indent=2, sort_keys=True), encoding="utf-8")

    # ------------------------------------------------------------------
    # API call
    # ------------------------------------------------------------------
    def _call(self, payload: Mapping[str, Any]) -> tuple[str, Optional[str]]:
        try:
            completion = self._client.chat.completions.create(
                model=payload["model"],
                temperature=payload["temperature"],
                messages=payload["messages"],
                timeout=self.config.request_timeout,
            )
        except openai.APIStatusError as exc:
            message = _status_message(exc)
            if exc.status_code == 429:
                raise LLMRateLimitError(message, status_code=429) from exc
            raise LLMClientError(message, status_code=exc.status_code) from exc
        except openai.APIError as exc:
            # connection failures and timeouts carry no status
            raise LLMClientError(str(exc)) from exc
        choice = completion.choices[0]
        return getattr(choice.message, "content", None) or "", getattr(choice, "finish_reason", None)


def _request_payload(messages: Conversation, model: str, temperature: float) -> Dict[str, Any]:
    rendered: List[Dict[str, str]] = []
    for message in messages:
        if isinstance(message, LLMMessage):
            rendered.append(message.to_dict())
        elif isinstance(message, Mapping):
            rendered.append({"role": str(message["role"]), "content": str(message["content"])})
        else:
            raise TypeError(f"Unsupported chat message: {message!r}")
    return {"model": model, "temperature": temperature, "messages": rendered}


def _status_message(exc: "openai.APIStatusError") -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        error = body.get("error", body)
        if isinstance(error, Mapping):
            for key in ("message", "code", "type"):
                value = error.get(key)
                if isinstance(value, str) and value.strip():
                    return f"{value.strip()} ({exc.status_code})"
    return str(exc)


__all__ = [
    "LLMClient",
    "LLMClientConfig",
    "LLMClientError",
    "LLMMessage",
    "LLMRateLimitError",
    "LLMResponse",
]
