"""Request decoding and response encoding for the EdgeAI Gateway API.

Decoding failures raise :class:`~edgeai.core.errors.RequestParseError`, which
the router turns into a ``400 text/plain`` response carrying the message.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
from typing import Any, TypeVar

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ValidationError

from edgeai.api.models import ChatMessage
from edgeai.core.errors import NO_JSON_DATA, RequestParseError

logger = logging.getLogger(__name__)

RequestModel = TypeVar("RequestModel", bound=BaseModel)


def parse_json_body(raw: bytes) -> dict[str, Any]:
    """Decode a request body into a JSON object.

    Raises:
        RequestParseError: If the body is empty, not UTF-8 JSON, or not an
            object.
    """
    if not raw or not raw.strip():
        raise RequestParseError(NO_JSON_DATA)
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise RequestParseError(NO_JSON_DATA) from None
    if not isinstance(payload, dict):
        raise RequestParseError(NO_JSON_DATA)
    return payload


def _describe_validation_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error.get("loc", ())) or "body"
    if error.get("type") == "missing":
        return f"Missing required field: {field}"
    return f"Invalid field '{field}': {error.get('msg', 'invalid value')}"


def parse_request(model_cls: type[RequestModel], raw: bytes) -> RequestModel:
    """Decode a request body into ``model_cls``.

    Args:
        model_cls: Pydantic request model of the endpoint.
        raw: Raw request body.

    Returns:
        The validated request model.

    Raises:
        RequestParseError: With ``No JSON data found`` for unusable bodies,
            or a field-level message for missing or ill-typed fields.
    """
    payload = parse_json_body(raw)
    try:
        return model_cls.model_validate(payload)
    except ValidationError as exc:
        raise RequestParseError(_describe_validation_error(exc)) from None


def decode_base64_image(data: str) -> Image.Image:
    """Decode a base64 PNG/JPEG (optionally a ``data:`` URL) into an RGB image.

    Raises:
        RequestParseError: If the payload is not valid base64 or not an image.
    """
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]

    try:
        image_bytes = base64.b64decode("".join(data.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise RequestParseError(f"Invalid image data: {exc}") from None
    if not image_bytes:
        raise RequestParseError("Invalid image data: empty payload")

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image.load()
            decoded = image.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise RequestParseError(f"Invalid image data: {exc}") from None

    logger.debug("Decoded image %dx%d.", decoded.width, decoded.height)
    return decoded


def extract_chat_text(messages: list[ChatMessage]) -> str:
    """Return the prompt text of the last chat message.

    String content is used as is.  For block content the ``text`` of every
    ``type == "text"`` block is joined with newlines; other blocks are
    ignored.
    """
    content = messages[-1].content
    if isinstance(content, str):
        return content

    texts = [block.text for block in content if block.type == "text" and block.text]
    skipped = len(content) - len(texts)
    if skipped:
        logger.debug("Ignoring %d non-text content block(s) in chat message.", skipped)
    return "\n".join(texts)


def text_body(text: str, **extra: Any) -> dict[str, Any]:
    return {"text": text, **extra}


def chat_body(text: str) -> dict[str, Any]:
    return {
        "messages": [
            {
                "role": "assistant",
                "content": [{"type": "text", "text": text}],
            }
        ]
    }
