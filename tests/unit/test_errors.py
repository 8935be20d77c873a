"""Tests for edgeai.core.errors — outcome kinds and HTTP status mapping."""

from __future__ import annotations

import pytest

from edgeai.core.errors import (
    STATUS_CODE_MAP,
    EdgeAIError,
    InferenceOutcome,
    OutcomeKind,
    RequestParseError,
    SessionInitError,
    clean_up_error_message,
)


class TestStatusCodes:
    def test_every_kind_mapped(self):
        """Every outcome kind has an HTTP status."""
        assert set(STATUS_CODE_MAP) == set(OutcomeKind)

    @pytest.mark.parametrize(
        "kind",
        [
            OutcomeKind.MODEL_UNAVAILABLE,
            OutcomeKind.INIT_ERROR,
            OutcomeKind.INFERENCE_ERROR,
            OutcomeKind.TIMEOUT,
        ],
    )
    def test_soft_failures_are_200(self, kind):
        """Soft failures are reported in a 200 body."""
        assert InferenceOutcome(kind, "x").status_code == 200

    def test_exception_status_codes(self):
        """Each exception class carries the status of its outcome kind."""
        assert RequestParseError("bad").status_code == 400
        assert EdgeAIError("boom").status_code == 500
        assert SessionInitError("init").status_code == 200

    def test_model_unavailable_outcome(self):
        """The no-model outcome carries the fixed user-facing message."""
        outcome = InferenceOutcome.model_unavailable()
        assert outcome.kind is OutcomeKind.MODEL_UNAVAILABLE
        assert outcome.text == "No LLM model available"


class TestToOutcome:
    def test_parse_error(self):
        """A parse error converts to a 400 outcome with its message."""
        outcome = RequestParseError("Invalid JSON").to_outcome()
        assert outcome.kind is OutcomeKind.PARSE_ERROR
        assert outcome.text == "Invalid JSON"
        assert outcome.status_code == 400

    def test_unexpected_error(self):
        """The base error converts to a 500 internal-error outcome."""
        outcome = EdgeAIError("catalog corrupted").to_outcome()
        assert outcome.kind is OutcomeKind.INTERNAL_ERROR
        assert outcome.status_code == 500

    def test_session_init_error(self):
        """An init failure converts to a soft 200 outcome."""
        outcome = SessionInitError("weights missing").to_outcome()
        assert outcome.kind is OutcomeKind.INIT_ERROR
        assert outcome.text == "weights missing"
        assert outcome.status_code == 200


class TestOutcomes:
    def test_inference_error_prefix(self):
        """Inference errors are prefixed for display."""
        outcome = InferenceOutcome.inference_error("boom")
        assert outcome.text == "Error during inference: boom"
        assert not outcome.ok

    def test_timeout_keeps_partial_text(self):
        """A timeout outcome keeps the text produced so far."""
        outcome = InferenceOutcome.timed_out("half an ans")
        assert outcome.kind is OutcomeKind.TIMEOUT
        assert outcome.text == "half an ans"


class TestCleanUpErrorMessage:
    def test_trace_removed(self):
        """The source location dump is stripped."""
        raw = "Model file is corrupt.\n=== Source Location Trace ===\nengine.cc:42\nsession.cc:7"
        assert clean_up_error_message(raw) == "Model file is corrupt."

    def test_plain_message_unchanged(self):
        """Messages without a trace pass through."""
        assert clean_up_error_message("oops") == "oops"

    def test_nothing_left(self):
        """An all-trace message falls back to a generic text."""
        assert clean_up_error_message("=== Source Location Trace ===\nfoo") == "Unknown error"
