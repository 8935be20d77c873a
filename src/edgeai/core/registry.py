"""Model catalog: descriptors, generation parameters and lookup.

The registry is read-only shared state.  Request handlers resolve a
:class:`ModelDescriptor` from it and derive a request-scoped
:class:`GenerationConfig` with :meth:`GenerationConfig.with_overrides`; the
descriptors themselves are frozen and are never modified after loading.

Catalog File
------------
The catalog is a JSON document with a ``models`` list, in priority order::

    {
      "models": [
        {
          "name": "gemma3n_e4b_it",
          "model_id": "google/gemma-3n-E4B-it",
          "llm_support_image": true,
          "tasks": ["llm_chat", "llm_ask_image"],
          "generation_config": {"max_tokens": 1024, "top_k": 20}
        }
      ]
    }

The order matters: when a request names no model, the first entry that is
an LLM (has prompt templates, or supports image or audio input) is used.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024
DEFAULT_TOP_K = 40
DEFAULT_TOP_P = 0.9
DEFAULT_TEMPERATURE = 1.0


class GenerationOverrides(BaseModel):
    """Per-request generation parameters; ``None`` means "keep the default"."""

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> GenerationOverrides:
        """Collect the numerically valid override fields from a request body.

        The JSON keys follow the UI's naming (``temperature``, ``top_p``,
        ``topK``, ``maxTokens``).  Values that are missing, non-numeric,
        booleans, non-finite, or out of range are ignored.

        Args:
            payload: Decoded JSON object of the request.

        Returns:
            Overrides containing only the accepted fields.
        """
        values: dict[str, Any] = {}

        temperature = _as_float(payload.get("temperature"))
        if temperature is not None and temperature >= 0.0:
            values["temperature"] = temperature

        top_p = _as_float(payload.get("top_p"))
        if top_p is not None and 0.0 <= top_p <= 1.0:
            values["top_p"] = top_p

        top_k = _as_positive_int(payload.get("topK"))
        if top_k is not None:
            values["top_k"] = top_k

        max_tokens = _as_positive_int(payload.get("maxTokens"))
        if max_tokens is not None:
            values["max_tokens"] = max_tokens

        supplied = {
            key
            for key in ("temperature", "top_p", "topK", "maxTokens")
            if payload.get(key) is not None
        }
        if len(supplied) != len(values):
            logger.debug("Ignoring invalid generation overrides in %s", sorted(supplied))

        return cls(**values)

    def as_update(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _as_positive_int(value: Any) -> int | None:
    number = _as_float(value)
    if number is None or number < 1 or not number.is_integer():
        return None
    return int(number)


class GenerationConfig(BaseModel):
    """Sampling and runtime parameters used to build an inference session."""

    model_config = ConfigDict(frozen=True)

    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=1)
    top_k: int = Field(default=DEFAULT_TOP_K, ge=1)
    top_p: float = Field(default=DEFAULT_TOP_P, ge=0.0, le=1.0)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0)
    accelerator: Literal["cpu", "gpu"] = "gpu"

    def with_overrides(self, overrides: GenerationOverrides | None) -> GenerationConfig:
        """Return a copy with the request's overrides applied.

        The receiver is left untouched so that registry defaults never leak
        between requests.
        """
        if overrides is None:
            return self
        update = overrides.as_update()
        if not update:
            return self
        return self.model_copy(update=update)


class ModelDescriptor(BaseModel):
    """Static description of a model in the catalog.

    Attributes:
        name: Unique key used by requests (``"model"`` field).
        model_id: Directory name under ``models_dir`` or a Hugging Face repo id.
        backend: Engine binding used to run the model.
        llm_support_image: Whether the model accepts image input.
        llm_support_audio: Whether the model accepts audio input.
        llm_prompt_templates: Prompt templates offered by the UI, if any.
        tasks: Identifiers of the UI tasks that list the model.
        generation_config: Default generation parameters.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)
    backend: str = "transformers"
    llm_support_image: bool = False
    llm_support_audio: bool = False
    llm_prompt_templates: list[str] | None = None
    tasks: list[str] = Field(default_factory=list)
    generation_config: GenerationConfig = Field(default_factory=GenerationConfig)

    @property
    def is_llm(self) -> bool:
        return (
            self.llm_prompt_templates is not None
            or self.llm_support_image
            or self.llm_support_audio
        )


class ModelRegistry:
    """Ordered, read-only collection of :class:`ModelDescriptor` objects."""

    def __init__(self, models: Iterable[ModelDescriptor] = ()) -> None:
        self._models: list[ModelDescriptor] = []
        seen: set[str] = set()
        for model in models:
            if model.name in seen:
                raise ValueError(f"Duplicate model name in catalog: {model.name}")
            seen.add(model.name)
            self._models.append(model)

    @classmethod
    def from_file(cls, path: Path) -> ModelRegistry:
        """Load a registry from a JSON catalog file.

        A missing file yields an empty registry, so that the gateway still
        starts and answers inference requests with the "no model" reply.

        Args:
            path: Path to the catalog JSON.

        Returns:
            The loaded registry.

        Raises:
            ValueError: If the file exists but is not a valid catalog.
        """
        if not path.exists():
            logger.warning("Model catalog not found: %s (registry is empty)", path)
            return cls()

        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)

        if not isinstance(data, dict) or not isinstance(data.get("models", []), list):
            raise ValueError(f"Model catalog must be an object with a 'models' list: {path}")

        return cls(ModelDescriptor.model_validate(entry) for entry in data.get("models", []))

    def get_model_by_name(self, name: str) -> ModelDescriptor | None:
        return next((m for m in self._models if m.name == name), None)

    def default_llm_model(self) -> ModelDescriptor | None:
        return next((m for m in self._models if m.is_llm), None)

    def resolve(self, name: str | None) -> ModelDescriptor | None:
        """Resolve a requested model name, falling back to the default LLM."""
        if name is not None:
            return self.get_model_by_name(name)
        return self.default_llm_model()

    @property
    def names(self) -> list[str]:
        return [m.name for m in self._models]

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)
