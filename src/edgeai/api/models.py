"""Pydantic request models for the EdgeAI Gateway API.

These models describe the small JSON dialects spoken by the web UI.  Request
bodies are parsed by :func:`edgeai.api.codec.parse_request` rather than by
FastAPI's automatic body validation, because malformed bodies must be
answered with ``400 text/plain`` messages instead of FastAPI's 422 JSON.

Models
------
TextRequest
    Payload for ``POST /edgeai``.
ChatRequest
    Payload for ``POST /edgeai_chat``, built from :class:`ChatMessage` and
    :class:`ContentBlock`.
ImageRequest
    Payload for ``POST /edgeai_image`` and ``POST /edgeai_image_direct``.
ImageUrlRequest
    Payload for ``POST /edgeai_image_url``.

Generation overrides (``temperature``, ``top_p``, ``topK``, ``maxTokens``)
are accepted by every model but left untyped here: a value that
is not a usable number is ignored instead of rejecting the request.  See
:meth:`edgeai.core.registry.GenerationOverrides.from_payload`.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from edgeai.core.registry import GenerationOverrides


class GatewayRequest(BaseModel):
    """Fields shared by every inference request.

    Attributes:
        model: Name of the model to use.  ``None`` (or blank) selects the
            catalog's default LLM.
        temperature: Sampling temperature override.
        top_p: Nucleus sampling override.
        top_k: Top-k sampling override (JSON key ``topK``).
        max_tokens: Token budget override (JSON key ``maxTokens``).
    """

    model_config = ConfigDict(populate_by_name=True)

    model: str | None = Field(
        default=None,
        description="Model name from the catalog; default LLM when omitted.",
    )
    temperature: Any = None
    top_p: Any = None
    top_k: Any = Field(default=None, alias="topK")
    max_tokens: Any = Field(default=None, alias="maxTokens")

    @field_validator("model", mode="before")
    @classmethod
    def _blank_model_is_default(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def overrides(self) -> GenerationOverrides:
        return GenerationOverrides.from_payload(
            {
                "temperature": self.temperature,
                "top_p": self.top_p,
                "topK": self.top_k,
                "maxTokens": self.max_tokens,
            }
        )


class TextRequest(GatewayRequest):
    """Request body for ``POST /edgeai``."""

    prompt: str = Field(..., description="Prompt text.")


class ContentBlock(BaseModel):
    """One block of a chat message's content.

    Only ``type == "text"`` blocks contribute to the prompt; other block
    types (e.g. images) are accepted and ignored.
    """

    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: str | None = None


class ChatMessage(BaseModel):
    """A chat message whose content is a string or a list of blocks."""

    model_config = ConfigDict(extra="allow")

    role: str = "user"
    content: str | list[ContentBlock] = ""


class ChatRequest(GatewayRequest):
    """Request body for ``POST /edgeai_chat``."""

    messages: list[ChatMessage] = Field(..., min_length=1)


class ImageRequest(GatewayRequest):
    """Request body for ``POST /edgeai_image`` and ``POST /edgeai_image_direct``.

    Attributes:
        image: Base64 PNG or JPEG, optionally as a ``data:`` URL.
        prompt: Prompt sent with the image; endpoint default when omitted.
    """

    image: str = Field(..., description="Base64-encoded PNG or JPEG image.")
    prompt: str | None = None


class ImageUrlRequest(GatewayRequest):
    """Request body for ``POST /edgeai_image_url``.

    The URL is embedded in the prompt text; it is not fetched.
    """

    image_url: str = Field(..., alias="imageUrl")
    prompt: str | None = None
