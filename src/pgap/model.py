"""
Generative model client and reply classification.

The provider is reached through the OpenAI-compatible chat completions API
(by default Gemini's compatibility endpoint). A reply is classified into
exactly one of three variants before anyone inspects its contents:

    StructuredCall  the model answered with the declared function call
    TextJson        free text that parses as JSON once code fences are removed
    Unparseable     neither of the above
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import httpx
import openai
from openai import OpenAI

from .errors import ModelError, TransientError

logger = logging.getLogger(__name__)


_FENCE_RE = re.compile(r"```[A-Za-z]*\s*(.*?)\s*```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"\A```[A-Za-z]*\s*")
_CLOSE_FENCE_RE = re.compile(r"\s*```\Z")


@dataclass(frozen=True)
class ModelReply:
    """Raw reply: arguments of the declared function call and/or free text."""

    tool_arguments: Optional[str] = None
    text: Optional[str] = None


@dataclass(frozen=True)
class StructuredCall:
    arguments: dict


@dataclass(frozen=True)
class TextJson:
    payload: Any


@dataclass(frozen=True)
class Unparseable:
    raw: Optional[str]


ModelOutput = Union[StructuredCall, TextJson, Unparseable]


class ModelClient(Protocol):
    def complete(self, prompt: str, function: dict) -> ModelReply: ...


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text without stray fences.

    Truncated replies often open a fence and never close it.
    """
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    body = _OPEN_FENCE_RE.sub("", text.strip())
    return _CLOSE_FENCE_RE.sub("", body).strip()


def classify_reply(reply: ModelReply) -> ModelOutput:
    if reply.tool_arguments:
        try:
            arguments = json.loads(reply.tool_arguments)
        except json.JSONDecodeError:
            logger.warning("Function call arguments are not valid JSON; trying text fallback")
        else:
            if isinstance(arguments, dict):
                return StructuredCall(arguments=arguments)
            logger.warning("Function call arguments are not an object; trying text fallback")

    if reply.text and reply.text.strip():
        try:
            return TextJson(payload=json.loads(strip_code_fences(reply.text)))
        except json.JSONDecodeError:
            pass

    return Unparseable(raw=reply.text if reply.text is not None else reply.tool_arguments)


class OpenAIModelClient:
    """Chat-completions client with a forced function call and an explicit timeout."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout_seconds: float = 30.0,
        force_function_call: bool = True,
        client: Optional[Any] = None,
    ):
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.force_function_call = force_function_call
        # Retries belong to the caller, so the SDK's own retry loop is disabled.
        self._client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            max_retries=0,
        )

    @classmethod
    def from_config(cls, config) -> "OpenAIModelClient":
        return cls(
            api_key=config.model_api_key,
            model=config.model_name,
            base_url=config.model_base_url,
            timeout_seconds=config.model_timeout_seconds,
        )

    def complete(self, prompt: str, function: dict) -> ModelReply:
        request: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "tools": [{"type": "function", "function": function}],
        }
        if self.force_function_call:
            request["tool_choice"] = {"type": "function", "function": {"name": function["name"]}}
        else:
            request["response_format"] = {"type": "json_object"}

        logger.info("Requesting proposal from model %s", self.model)
        try:
            completion = self._client.chat.completions.create(**request)
        except openai.APIConnectionError as exc:
            # APITimeoutError is a subclass of APIConnectionError.
            raise TransientError(f"Model request failed: {type(exc).__name__}: {exc}") from exc
        except openai.RateLimitError as exc:
            raise TransientError(f"Model rate limited: {exc}", retry_after=5.0) from exc
        except openai.InternalServerError as exc:
            raise TransientError(f"Model provider unavailable: {exc}") from exc
        except openai.APIError as exc:
            raise ModelError(f"Model request rejected: {type(exc).__name__}: {exc}") from exc

        if not completion.choices:
            logger.warning("Model returned no choices")
            return ModelReply()

        choice = completion.choices[0]
        message = choice.message
        arguments = None
        for call in message.tool_calls or []:
            if call.function is not None and call.function.name == function["name"]:
                arguments = call.function.arguments
                break

        logger.info(
            "Model replied (finish_reason=%s, function_call=%s)",
            choice.finish_reason,
            arguments is not None,
        )
        return ModelReply(tool_arguments=arguments, text=message.content)
