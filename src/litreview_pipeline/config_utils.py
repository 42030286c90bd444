"""Configuration loading and secret resolution for the review scripts.

:func:`load_config` reads `config/pipeline.yaml` (or a JSON equivalent) and
:meth:`PipelineSettings.from_config` validates it.  API keys never need to be
committed: the `api_keys` section can point at environment variables or
files, and a missing required secret raises :class:`MissingSecretError`.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml

from .llm import LLMClientConfig
from .retry import RetryPolicy


class MissingSecretError(RuntimeError):
    """Raised when a required secret cannot be resolved."""


_PLACEHOLDER_API_KEYS: Mapping[str, Iterable[str]] = {
    "openai": ("sk-your-openai-key", "your-openai-key"),
}


def load_config(path: str | Path) -> Dict[str, Any]:
    """Read a YAML (``.yaml``/``.yml``) or JSON configuration file."""

    source = Path(path)
    text = source.read_text(encoding="utf-8")
    if source.suffix.lower() in {".yaml", ".yml"}:
        payload = yaml.safe_load(text)
    else:
        payload = json.loads(text)
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Configuration file {source} must contain a mapping")
    return dict(payload)


def resolve_api_keys(
    config: Mapping[str, Any],
    *,
    env: Mapping[str, str] | None = None,
    base_path: Path | None = None,
) -> Dict[str, str | None]:
    """Resolve the ``api_keys`` section into plain values.

    Each entry is either a literal string (``"env:NAME"`` and ``$NAME`` are
    looked up in the environment) or a mapping with any of ``env``, ``file``,
    ``value``, ``default`` and ``required``.  ``env`` defaults to
    :data:`os.environ`; relative ``file`` paths are resolved against
    ``base_path``.
    """

    environment = dict(os.environ if env is None else env)
    root = Path(base_path) if base_path is not None else None
    return {
        name: _resolve_single_secret(name, descriptor, environment, root)
        for name, descriptor in config.items()
    }


def ensure_real_api_keys(values: Mapping[str, str | None]) -> Dict[str, str | None]:
    """Refuse the placeholder key shipped in the sample configuration.

    A placeholder would fail every extraction batch with an authentication
    error, so it is reported here as a :class:`MissingSecretError` instead.
    """

    offenders = [
        f"{name}='{value}'"
        for name, value in values.items()
        if value
        and value.strip().lower()
        in {placeholder.lower() for placeholder in _PLACEHOLDER_API_KEYS.get(name, ())}
    ]
    if offenders:
        raise MissingSecretError(
            "Placeholder API key detected; replace the sample value with a real key for: "
            + ", ".join(offenders)
        )
    return dict(values)


def _resolve_single_secret(
    name: str,
    descriptor: Any,
    environment: Mapping[str, str],
    base_path: Path | None,
) -> str | None:
    if descriptor is None:
        return None
    if isinstance(descriptor, str):
        return _secret_from_string(descriptor, environment)
    if not isinstance(descriptor, Mapping):
        return None

    if "env" in descriptor:
        value = _secret_from_env(name, descriptor, environment)
        if value is not None:
            return value
    if "value" in descriptor:
        raw_value = descriptor.get("value")
        return str(raw_value) if raw_value is not None else None
    if "file" in descriptor:
        value = _secret_from_file(name, descriptor, base_path)
        if value is not None:
            return value
    default = descriptor.get("default")
    return str(default) if default is not None else None


def _secret_from_string(descriptor: str, environment: Mapping[str, str]) -> str | None:
    if descriptor.lower().startswith("env:"):
        env_name = descriptor.split(":", 1)[1].strip()
        return environment.get(env_name) if env_name else None
    expanded = os.path.expandvars(descriptor)
    return expanded or None


def _secret_from_env(
    name: str, descriptor: Mapping[str, Any], environment: Mapping[str, str]
) -> str | None:
    env_name = str(descriptor["env"]).strip()
    if not env_name:
        return None
    value = environment.get(env_name)
    if value:
        return value
    if descriptor.get("required"):
        raise MissingSecretError(f"Environment variable '{env_name}' required for API key '{name}'")
    return None


def _secret_from_file(
    name: str, descriptor: Mapping[str, Any], base_path: Path | None
) -> str | None:
    path = Path(str(descriptor["file"]))
    if not path.is_absolute() and base_path is not None:
        path = base_path / path
    if path.exists():
        return path.read_text(encoding="utf-8").strip()
    if descriptor.get("required"):
        raise MissingSecretError(f"Secret file '{path}' required for API key '{name}' not found")
    return None


@dataclass(frozen=True)
class PipelineSettings:
    """Validated runtime settings for every review command."""

    state_path: Path = Path("data/review_state.json")
    topic: str = ""
    enable_species: bool = False
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    request_timeout: float = 120.0
    cache_dir: Optional[Path] = Path("data/cache/llm")
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    max_chunk_size: int = 25000
    courtesy_delay: float = 2.0
    max_retries: int = 6
    backoff_base: float = 2.0
    jitter: float = 1.0
    consolidation_retries: int = 3
    sample_size: int = 5
    verify_sample_size: int = 15
    normalization_chunk_size: int = 150

    def __post_init__(self) -> None:
        if self.max_chunk_size <= 0:
            raise ValueError("extraction.max_chunk_size must be > 0")
        if self.courtesy_delay < 0:
            raise ValueError("extraction.courtesy_delay must be >= 0")
        if self.max_retries < 0 or self.consolidation_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.sample_size <= 0 or self.verify_sample_size <= 0:
            raise ValueError("consolidation sample sizes must be > 0")
        if self.normalization_chunk_size <= 0:
            raise ValueError("normalization.chunk_size must be > 0")

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        env: Mapping[str, str] | None = None,
        base_path: Path | None = None,
    ) -> "PipelineSettings":
        review = _section(config, "review")
        llm = _section(config, "llm")
        extraction = _section(config, "extraction")
        consolidation = _section(config, "consolidation")
        normalization = _section(config, "normalization")

        api_keys = ensure_real_api_keys(
            resolve_api_keys(_section(config, "api_keys"), env=env, base_path=base_path)
        )
        api_key = llm.get("api_key") or api_keys.get(str(llm.get("api_key_key", "openai")))

        defaults = cls()
        cache_dir = llm.get("cache_dir", defaults.cache_dir)
        return cls(
            state_path=Path(review.get("state_path", defaults.state_path)),
            topic=str(review.get("topic") or ""),
            enable_species=bool(review.get("enable_species", False)),
            model=str(llm.get("model") or defaults.model),
            temperature=float(llm.get("temperature", defaults.temperature)),
            request_timeout=float(llm.get("request_timeout", defaults.request_timeout)),
            cache_dir=Path(cache_dir) if cache_dir else None,
            base_url=llm.get("base_url"),
            api_key=api_key or None,
            max_chunk_size=int(extraction.get("max_chunk_size", defaults.max_chunk_size)),
            courtesy_delay=float(extraction.get("courtesy_delay", defaults.courtesy_delay)),
            max_retries=int(extraction.get("max_retries", defaults.max_retries)),
            backoff_base=float(extraction.get("backoff_base", defaults.backoff_base)),
            jitter=float(extraction.get("jitter", defaults.jitter)),
            consolidation_retries=int(consolidation.get("max_retries", defaults.consolidation_retries)),
            sample_size=int(consolidation.get("sample_size", defaults.sample_size)),
            verify_sample_size=int(
                consolidation.get("verify_sample_size", defaults.verify_sample_size)
            ),
            normalization_chunk_size=int(
                normalization.get("chunk_size", defaults.normalization_chunk_size)
            ),
        )

    def llm_config(self) -> LLMClientConfig:
        return LLMClientConfig(
            model=self.model,
            temperature=self.temperature,
            request_timeout=self.request_timeout,
            cache_dir=self.cache_dir,
            base_url=self.base_url,
        )

    def extraction_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries, backoff_base=self.backoff_base, jitter=self.jitter
        )

    def consolidation_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.consolidation_retries,
            backoff_base=self.backoff_base,
            jitter=self.jitter,
        )


def _section(config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name) if isinstance(config, Mapping) else None
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    return dict(value)


__all__ = [
    "MissingSecretError",
    "PipelineSettings",
    "ensure_real_api_keys",
    "load_config",
    "resolve_api_keys",
]
