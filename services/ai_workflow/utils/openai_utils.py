"""
openai_utils.py
Client wrapper for the OpenAI chat completions API: retries, per-call timeouts and streaming.
"""

import copy
import time
import logging
from typing import List, Dict, Any, Optional, Union, Iterator
from openai import OpenAI, OpenAIError
from services.constants import (
    OPENAI_SYNTHESIS_MODEL,
    OPENAI_REQUEST_TIMEOUT_SECONDS,
    OPENAI_RETRIES,
    OPENAI_BACKOFF_SECONDS,
)

logger = logging.getLogger(__name__)


class OpenAIClient:
    """
    The single completion-service contract used by every LLM-backed stage.

    A pipeline run binds its Deadline with `with_deadline`, so no single call
    can use more than what is left of the run's budget.
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        request_timeout: float = OPENAI_REQUEST_TIMEOUT_SECONDS,
        retries: int = OPENAI_RETRIES,
        backoff: float = OPENAI_BACKOFF_SECONDS,
    ):
        self._client = client
        self.request_timeout = request_timeout
        self.retries = retries
        self.backoff = backoff
        self.deadline = None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def with_deadline(self, deadline) -> "OpenAIClient":
        """Shallow copy sharing the underlying client, bounded by deadline."""
        bound = copy.copy(self)
        bound.deadline = deadline
        return bound

    def _timeout(self) -> float:
        if self.deadline is None:
            return self.request_timeout
        return self.deadline.call_timeout(self.request_timeout)

    def call_openai(
        self,
        system_prompt: str,
        user_query: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Union[str, Dict[str, Any]] = "auto",
        model: str = OPENAI_SYNTHESIS_MODEL,
        temperature: float = 0.0,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> Optional[Any]:
        """
        Make a robust OpenAI API call, optionally with function calling.

        Args:
            system_prompt: The system prompt to use
            user_query: The user's query
            tools: Function schema definitions, or None for a plain completion
            tool_choice: One of "none", "auto", "required", or dict to force a specific tool
            model: Model name
            temperature: Sampling temperature
            max_tokens: Completion token cap
            response_format: e.g. {"type": "json_object"}

        Returns:
            The OpenAI response object, or None if all retries fail
        """
        # Normalize tool_choice
        if isinstance(tool_choice, str):
            tool_choice = tool_choice.lower()
            if tool_choice not in ("none", "auto", "required"):
                logger.warning(f"Invalid tool_choice '{tool_choice}', defaulting to 'auto'")
                tool_choice = "auto"

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_query}
            ],
            "temperature": temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = tool_choice
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if response_format:
            kwargs["response_format"] = response_format

        for attempt in range(self.retries):
            if self.deadline is not None and self.deadline.expired():
                logger.warning("Pipeline budget exhausted, skipping OpenAI call")
                return None

            try:
                return self.client.chat.completions.create(timeout=self._timeout(), **kwargs)

            except OpenAIError as e:
                wait_time = self.backoff * (2 ** attempt)
                logger.error(f"OpenAI API call failed (attempt {attempt+1}/{self.retries}): {e}")
                if attempt < self.retries - 1:
                    if self.deadline is not None:
                        wait_time = min(wait_time, self.deadline.remaining())
                    logger.info(f"Retrying in {wait_time:.1f} seconds...")
                    time.sleep(wait_time)
                else:
                    logger.critical("All retries exhausted. Returning None.")
                    return None
            except Exception as e:
                logger.exception(f"Unexpected error in call_openai: {e}")
                return None
        return None

    def stream_openai(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        model: str = OPENAI_SYNTHESIS_MODEL,
        temperature: float = 0.0,
        max_tokens: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        """
        Stream a completion as a sequence of parts:
            {"type": "token", "content": "..."}
            {"type": "tool_call", "id": "...", "name": "...", "arguments": "{...}"}

        Tool call fragments are assembled before being yielded. Closing the
        generator closes the HTTP stream. Errors propagate to the caller.
        """
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        stream = self.client.chat.completions.create(timeout=self._timeout(), **kwargs)
        pending_calls: Dict[int, Dict[str, str]] = {}
        try:
            for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                if getattr(delta, "content", None):
                    yield {"type": "token", "content": delta.content}

                for call in getattr(delta, "tool_calls", None) or []:
                    entry = pending_calls.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                    if call.id:
                        entry["id"] = call.id
                    if call.function is not None:
                        if call.function.name:
                            entry["name"] = call.function.name
                        if call.function.arguments:
                            entry["arguments"] += call.function.arguments

            for index in sorted(pending_calls):
                yield {"type": "tool_call", **pending_calls[index]}
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
