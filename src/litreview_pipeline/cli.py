"""Argument and workspace helpers shared by the scripts under ``scripts/``."""

from __future__ import annotations

import argparse
from dataclasses import replace
import json
import logging
import os
from pathlib import Path
import sys
from typing import Any, Callable

from .config_utils import MissingSecretError, PipelineSettings, load_config
from .consolidation import ProposalError
from .corpus import CorpusBusyError
from .extraction import PipelineStateError
from .llm import LLMClientError
from .workspace import ReviewWorkspace

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/pipeline.yaml")

COMMAND_ERRORS = (
    CorpusBusyError,
    LLMClientError,
    MissingSecretError,
    PipelineStateError,
    ProposalError,
    ValueError,
)


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the pipeline configuration file (YAML or JSON)",
    )
    parser.add_argument(
        "--state",
        type=Path,
        help="Override the review state document path from the config",
    )
    parser.add_argument("--topic", help="Review topic (overrides the config value)")
    parser.add_argument("--llm-model", help="LLM model identifier (overrides the config value)")
    parser.add_argument(
        "--llm-api-key",
        help="API key for the OpenAI client (CLI > config file > OPENAI_API_KEY)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_settings(args: argparse.Namespace) -> PipelineSettings:
    config_path = Path(args.config)
    if config_path.exists():
        settings = PipelineSettings.from_config(
            load_config(config_path), base_path=config_path.parent
        )
    else:
        logger.debug("Config %s not found; using defaults", config_path)
        settings = PipelineSettings(api_key=os.environ.get("OPENAI_API_KEY") or None)

    overrides: dict[str, Any] = {}
    if not settings.api_key and os.environ.get("OPENAI_API_KEY"):
        overrides["api_key"] = os.environ["OPENAI_API_KEY"]
    if getattr(args, "state", None):
        overrides["state_path"] = Path(args.state)
    if getattr(args, "topic", None):
        overrides["topic"] = args.topic
    if getattr(args, "llm_model", None):
        overrides["model"] = args.llm_model
    if getattr(args, "llm_api_key", None):
        overrides["api_key"] = args.llm_api_key
    return replace(settings, **overrides) if overrides else settings


def open_workspace(args: argparse.Namespace, **kwargs: Any) -> ReviewWorkspace:
    workspace = ReviewWorkspace(load_settings(args), **kwargs)
    topic = getattr(args, "topic", None)
    if topic:
        workspace.corpus.topic = topic
    return workspace


def run_command(command: Callable[[], int]) -> int:
    """Run ``command`` and report expected failures as a non-zero exit code."""

    try:
        return command()
    except COMMAND_ERRORS as exc:
        logger.error("%s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))


__all__ = [
    "COMMAND_ERRORS",
    "DEFAULT_CONFIG_PATH",
    "add_common_arguments",
    "configure_logging",
    "load_settings",
    "open_workspace",
    "print_json",
    "run_command",
]
