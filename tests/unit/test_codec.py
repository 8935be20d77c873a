"""Tests for edgeai.api.codec and edgeai.api.models — request decoding.

Tests cover:
- ``400`` messages for empty, non-JSON and incomplete bodies.
- Base64 image decoding (plain and ``data:`` URL) and rejection of corrupt data.
- Chat text extraction and response envelopes.
- Override and model-name handling on request models.
"""

from __future__ import annotations

import base64

import pytest

from edgeai.api.codec import (
    chat_body,
    decode_base64_image,
    extract_chat_text,
    parse_request,
    text_body,
)
from edgeai.api.models import ChatRequest, ImageRequest, ImageUrlRequest, TextRequest
from edgeai.core.errors import RequestParseError


class TestParseRequest:
    @pytest.mark.parametrize("raw", [b"", b"   ", b"not json", b"[1, 2]", b"\xff\xfe"])
    def test_unusable_body(self, raw):
        """Empty, non-JSON and non-object bodies are rejected with one message."""
        with pytest.raises(RequestParseError) as excinfo:
            parse_request(TextRequest, raw)
        assert excinfo.value.message == "No JSON data found"
        assert excinfo.value.status_code == 400

    def test_missing_field_named(self):
        """A missing required field is named in the message."""
        with pytest.raises(RequestParseError) as excinfo:
            parse_request(ImageRequest, b'{"prompt": "hi"}')
        assert excinfo.value.message == "Missing required field: image"

    def test_missing_aliased_field_uses_json_name(self):
        """Missing aliased fields are reported by their JSON name."""
        with pytest.raises(RequestParseError) as excinfo:
            parse_request(ImageUrlRequest, b"{}")
        assert excinfo.value.message == "Missing required field: imageUrl"

    def test_wrong_type_named(self):
        """A field of the wrong type is named in the message."""
        with pytest.raises(RequestParseError) as excinfo:
            parse_request(TextRequest, b'{"prompt": 5}')
        assert excinfo.value.message.startswith("Invalid field 'prompt'")

    def test_empty_messages_rejected(self):
        """A chat request needs at least one message."""
        with pytest.raises(RequestParseError, match="messages"):
            parse_request(ChatRequest, b'{"messages": []}')

    def test_valid_request(self):
        """A well-formed body decodes into the request model."""
        req = parse_request(TextRequest, b'{"prompt": "hi", "model": "text_llm"}')
        assert req.prompt == "hi"
        assert req.model == "text_llm"


class TestRequestModels:
    def test_blank_model_means_default(self):
        """A blank model name selects the default model."""
        assert TextRequest.model_validate({"prompt": "x", "model": "  "}).model is None

    def test_override_aliases(self):
        """Override fields are read under their UI names."""
        req = TextRequest.model_validate(
            {"prompt": "x", "temperature": 0.5, "topK": 7, "maxTokens": 99}
        )
        assert req.overrides().as_update() == {"temperature": 0.5, "top_k": 7, "max_tokens": 99}

    def test_invalid_overrides_do_not_reject_request(self):
        """Invalid override values are dropped rather than rejected."""
        req = TextRequest.model_validate({"prompt": "x", "temperature": "warm", "topK": -1})
        assert req.overrides().as_update() == {}


class TestDecodeImage:
    def test_decodes_png(self, png_base64, sample_image):
        """A plain base64 PNG decodes to an RGB image."""
        image = decode_base64_image(png_base64)
        assert image.size == sample_image.size
        assert image.mode == "RGB"

    def test_decodes_data_url(self, png_base64):
        """A data URL prefix is accepted."""
        image = decode_base64_image(f"data:image/png;base64,{png_base64}")
        assert image.size == (32, 24)

    def test_invalid_base64(self):
        """Malformed base64 is rejected."""
        with pytest.raises(RequestParseError, match="Invalid image data"):
            decode_base64_image("!!!not base64!!!")

    def test_not_an_image(self):
        """Valid base64 that is not an image is rejected."""
        payload = base64.b64encode(b"plain text, not pixels").decode()
        with pytest.raises(RequestParseError, match="Invalid image data"):
            decode_base64_image(payload)

    def test_empty_payload(self):
        """An empty payload is rejected."""
        with pytest.raises(RequestParseError, match="Invalid image data"):
            decode_base64_image("")


class TestChat:
    def _messages(self, *contents):
        return ChatRequest.model_validate(
            {"messages": [{"role": "user", "content": c} for c in contents]}
        ).messages

    def test_last_message_string(self):
        """Only the last message is used."""
        assert extract_chat_text(self._messages("first", "second")) == "second"

    def test_text_blocks_joined(self):
        """Text blocks are joined by newlines and other blocks skipped."""
        messages = self._messages(
            [
                {"type": "text", "text": "line one"},
                {"type": "image_url", "image_url": {"url": "http://x"}},
                {"type": "text", "text": "line two"},
            ]
        )
        assert extract_chat_text(messages) == "line one\nline two"

    def test_no_text_blocks(self):
        """A message without text blocks yields an empty prompt."""
        assert extract_chat_text(self._messages([{"type": "image"}])) == ""

    def test_chat_body_envelope(self):
        """Chat replies use the assistant message envelope."""
        assert chat_body("hi") == {
            "messages": [{"role": "assistant", "content": [{"type": "text", "text": "hi"}]}]
        }

    def test_text_body_extra_fields(self):
        """Extra fields are merged into the text envelope."""
        assert text_body("hi", image_url="/images/a.png") == {
            "text": "hi",
            "image_url": "/images/a.png",
        }
