from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class SupportsInvoke(Protocol):
    """Anything LangChain-shaped that can be invoked with a prompt."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Wraps a structured-output runnable and validates every response against ``schema``."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> ModelT:
        """Invoke the model and return a validated ``schema`` instance.

        Raises:
            RuntimeError: If the model returns unparseable or invalid output.
        """
        raw_output = self.runnable.invoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY from the environment, loading ``.env`` first when present.

    Raises:
        RuntimeError: If the key is unavailable.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for site generation")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI client; transient-failure retries live here, not in the core.

    Raises:
        ValueError: If *model_name* is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def _unwrap_envelope(raw_output: Any, label: str) -> Any:
    """Strip an ``include_raw=True`` envelope down to its parsed payload."""
    if not (isinstance(raw_output, dict) and "parsed" in raw_output and "parsing_error" in raw_output):
        return raw_output
    if raw_output["parsing_error"] is not None:
        error = raw_output["parsing_error"]
        raise RuntimeError(f"{label}: structured output parsing failed: {error!r}") from error
    if raw_output["parsed"] is None:
        raise RuntimeError(f"{label}: model returned no parsed payload")
    return raw_output["parsed"]


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Coerce raw structured output into a validated ``schema`` instance.

    Accepts an ``include_raw=True`` envelope, a pydantic model, or a plain dict.

    Raises:
        RuntimeError: If the output cannot be parsed or validated.
    """
    label = schema.__name__
    payload = _unwrap_envelope(raw_output, label)
    if isinstance(payload, schema):
        return payload
    if not isinstance(payload, (BaseModel, dict)):
        raise RuntimeError(f"{label}: unsupported payload type {type(payload).__name__}")

    data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise RuntimeError(f"{label}: structured output validation failed: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind *schema* to a chat model via function calling and wrap it for validation."""
    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        max_completion_tokens=max_completion_tokens,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(schema, method="function_calling", strict=True)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
