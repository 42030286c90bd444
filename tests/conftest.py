from __future__ import annotations

import json
from typing import Any, Callable, List, Sequence

import pytest

from litreview_pipeline.llm import LLMResponse


class ScriptedLLM:
    """Stand-in for :class:`LLMClient` replaying a fixed list of replies.

    Each reply is a string, a JSON-serialisable object, an exception to raise
    or a callable receiving the request messages.
    """

    def __init__(self, replies: Sequence[Any] = ()) -> None:
        self.replies: List[Any] = list(replies)
        self.calls: List[List[Any]] = []

    def queue(self, *replies: Any) -> None:
        self.replies.extend(replies)

    def generate(self, messages_batch, *, model=None, temperature=None):
        responses = []
        for messages in messages_batch:
            self.calls.append(list(messages))
            if not self.replies:
                raise AssertionError("ScriptedLLM ran out of replies")
            reply = self.replies.pop(0)
            if callable(reply) and not isinstance(reply, type):
                reply = reply(messages)
            if isinstance(reply, BaseException):
                raise reply
            content = reply if isinstance(reply, str) else json.dumps(reply)
            responses.append(LLMResponse(content=content, cached=False))
        return responses

    def user_prompt(self, index: int = -1) -> str:
        return self.calls[index][-1].content

    def system_prompt(self, index: int = -1) -> str:
        return self.calls[index][0].content


@pytest.fixture
def scripted_llm() -> Callable[..., ScriptedLLM]:
    def factory(*replies: Any) -> ScriptedLLM:
        return ScriptedLLM(replies)

    return factory


def paper(title: str, category: str = "Fire", theme: str = "Survival", **extra: Any) -> dict:
    payload = {
        "title": title,
        "authors": "Smith et al.",
        "year": "2020",
        "journal": "Ecology",
        "abstract_summary": f"Summary of {title}",
        "main_category": category,
        "sub_theme": theme,
        "driver_variable": "Fire frequency",
        "response_variable": "Nest survival",
        "effect_direction": "Negative",
        "study_location": "Australia",
        "key_finding": f"Finding of {title}",
        "impact_keywords": "fire, nests",
        "short_citation": "Smith et al., 2020",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def make_paper() -> Callable[..., dict]:
    return paper
