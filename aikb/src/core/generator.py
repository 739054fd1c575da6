"""
AIKB - Answer Generator
========================
Produces a structured answer from assembled context.

The model is asked for a single JSON object (see ``SYSTEM_PROMPT``).
Whatever comes back is parsed and validated against
``StructuredAnswer`` *before* any field is used; anything that does
not fit the schema raises ``MalformedResponseError``.

Implementations of the ``AnswerGenerator`` protocol:

``GeminiAnswerGenerator``
    ``ChatGoogleGenerativeAI`` (JSON response mode) via LangChain.

``StubAnswerGenerator``
    Deterministic offline answer that quotes the first context block.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from pydantic import ValidationError as SchemaValidationError

from aikb.config.prompt_templates import NO_CONTEXT_PLACEHOLDER, NO_HISTORY_PLACEHOLDER, RAG_PROMPT_TEMPLATE, SYSTEM_PROMPT
from aikb.config.settings import settings
from aikb.src.core.budget import estimate_tokens
from aikb.src.core.errors import MalformedResponseError, UpstreamError
from aikb.src.core.models import ChatTurn, StructuredAnswer, Usage, UserProfile
from aikb.src.utils.logger import get_logger

logger = get_logger(__name__)

_RE_JSON_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)
_RE_BLOCK = re.compile(r"^SOURCE: (?P<title>.*?)\nCONTENT: (?P<content>.*)$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class GenerationOutput:
    payload: StructuredAnswer
    usage: Usage


@runtime_checkable
class AnswerGenerator(Protocol):
    async def generate(self, context: Sequence[str], question: str, history: Sequence[ChatTurn], user_profile: UserProfile) -> GenerationOutput: ...


# ══════════════════════════════════════════════════════════════════════
#  PROMPT & PARSING
# ══════════════════════════════════════════════════════════════════════


def build_prompt(context: Sequence[str], question: str, history: Sequence[ChatTurn], user_profile: UserProfile) -> str:
    """Fill ``RAG_PROMPT_TEMPLATE`` with the profile, context blocks and history."""
    context_str = "\n\n".join(context) if context else NO_CONTEXT_PLACEHOLDER
    if history:
        history_str = "\n".join(f"{'User' if turn.role == 'user' else 'Assistant'}: {turn.content}" for turn in history)
    else:
        history_str = NO_HISTORY_PLACEHOLDER
    return RAG_PROMPT_TEMPLATE.format(name=user_profile.name, department=user_profile.department, role=user_profile.role, context=context_str, history=history_str, question=question)


def parse_structured_answer(raw: str) -> StructuredAnswer:
    """
    Parse the model's raw text into a validated ``StructuredAnswer``.

    A surrounding Markdown code fence is tolerated.

    Raises
    ------
    MalformedResponseError
        Empty text, invalid JSON, a non-object payload, or a schema mismatch.
    """
    if not raw or not raw.strip():
        raise MalformedResponseError("empty response")

    fenced = _RE_JSON_FENCE.match(raw)
    text = fenced.group(1) if fenced else raw.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"response is not valid JSON (line {exc.lineno})") from exc

    if not isinstance(data, dict):
        raise MalformedResponseError(f"expected a JSON object, got {type(data).__name__}")

    try:
        return StructuredAnswer.model_validate(data)
    except SchemaValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedResponseError(f"response failed schema validation ({fields})") from exc


def _usage_from_metadata(metadata: dict | None, prompt: str) -> Usage:
    if not metadata:
        prompt_tokens = estimate_tokens(prompt)
        return Usage(prompt_tokens=prompt_tokens, total_tokens=prompt_tokens)
    prompt_tokens = int(metadata.get("input_tokens", 0))
    completion_tokens = int(metadata.get("output_tokens", 0))
    total = int(metadata.get("total_tokens", prompt_tokens + completion_tokens))
    return Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, total_tokens=total)


# ══════════════════════════════════════════════════════════════════════
#  GEMINI
# ══════════════════════════════════════════════════════════════════════


class GeminiAnswerGenerator:
    """
    Gemini chat model in JSON response mode.

    Parameters
    ----------
    api_key
        Google API key (plain string, unwrapped from ``SecretStr`` by the container).
    model
        Override ``settings.LLM_MODEL``.
    """

    __slots__ = ("_llm", "_model")

    def __init__(self, api_key: str, model: str | None = None) -> None:
        from langchain_google_genai import ChatGoogleGenerativeAI

        self._model = model or settings.LLM_MODEL
        self._llm = ChatGoogleGenerativeAI(model=self._model, temperature=settings.LLM_TEMPERATURE, max_output_tokens=settings.LLM_MAX_OUTPUT_TOKENS, response_mime_type="application/json", google_api_key=api_key)
        logger.info("LLM initialised: %s (temperature=%.1f)", self._model, settings.LLM_TEMPERATURE)


    async def generate(self, context: Sequence[str], question: str, history: Sequence[ChatTurn], user_profile: UserProfile) -> GenerationOutput:
        from langchain_core.messages import HumanMessage, SystemMessage

        prompt = build_prompt(context, question, history, user_profile)
        messages = [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=prompt)]

        try:
            response = await self._llm.ainvoke(messages)
        except Exception as exc:
            raise UpstreamError("generation", f"backend call failed ({type(exc).__name__})") from exc

        raw = response.content if isinstance(response.content, str) else "".join(part if isinstance(part, str) else str(part.get("text", "")) for part in response.content)
        payload = parse_structured_answer(raw)
        usage = _usage_from_metadata(getattr(response, "usage_metadata", None), prompt)
        logger.debug("Generated %d chars (total_tokens=%d).", len(payload.answer), usage.total_tokens)
        return GenerationOutput(payload=payload, usage=usage)


# ══════════════════════════════════════════════════════════════════════
#  STUB
# ══════════════════════════════════════════════════════════════════════


class StubAnswerGenerator:
    """Offline generator: answers with the opening sentence of the best block."""

    __slots__ = ()

    async def generate(self, context: Sequence[str], question: str, history: Sequence[ChatTurn], user_profile: UserProfile) -> GenerationOutput:
        prompt = build_prompt(context, question, history, user_profile)

        if context and (match := _RE_BLOCK.match(context[0])):
            title = match.group("title").strip()
            quote = _first_sentence(match.group("content"))
            data = {"answer": f"According to {title}: {quote}", "confidence": "Medium", "citations": [{"source": title, "quote": quote}], "missing_information": None}
        else:
            data = {"answer": "The provided context does not cover this question.", "confidence": "Low", "citations": [], "missing_information": question}

        raw = json.dumps(data)
        completion_tokens = estimate_tokens(raw)
        prompt_tokens = estimate_tokens(prompt)
        usage = Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, total_tokens=prompt_tokens + completion_tokens)
        return GenerationOutput(payload=parse_structured_answer(raw), usage=usage)


def _first_sentence(text: str, limit: int = 200) -> str:
    text = text.strip()
    end = text.find(". ")
    sentence = text[: end + 1] if 0 <= end < limit else text[:limit]
    return sentence.strip() or text[:limit]
