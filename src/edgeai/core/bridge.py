"""Blocking wrapper around the engine's streaming generation.

The engine reports output through a listener called from its own thread.
HTTP handlers, on the other hand, want one string.  :class:`SyncBridge` feeds
the input, starts generation, and blocks the calling thread on a
:class:`concurrent.futures.Future` until the engine signals completion, fails,
or the deadline passes.  On deadline expiry the engine is asked to cancel so
that generation does not keep running after the response has been sent.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError

from PIL import Image

from edgeai.core.errors import InferenceOutcome
from edgeai.core.session_manager import SessionContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 900.0


class _Accumulator:
    """Collects streamed increments and settles the completion future once."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._lock = threading.Lock()
        self.future: Future[InferenceOutcome] = Future()

    def append(self, partial: str) -> None:
        if not partial:
            return
        with self._lock:
            if not self.future.done():
                self._parts.append(partial)

    def text(self) -> str:
        with self._lock:
            return "".join(self._parts)

    def settle(self, outcome: InferenceOutcome) -> None:
        with self._lock:
            if not self.future.done():
                self.future.set_result(outcome)


class SyncBridge:
    """Turns callback-driven streaming generation into a blocking call."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds

    def run(
        self,
        context: SessionContext,
        prompt: str,
        images: Sequence[Image.Image] = (),
        timeout: float | None = None,
    ) -> InferenceOutcome:
        """Generate a reply on a live session and wait for it.

        The prompt is sent only when it contains non-whitespace text; images
        are attached after it, in order.

        Args:
            context: Initialized session context (see
                :meth:`~edgeai.core.session_manager.SessionManager.lease`).
            prompt: Prompt text.
            images: Images to attach.
            timeout: Seconds to wait; defaults to :attr:`timeout_seconds`.

        Returns:
            ``OK`` with the full text, ``INFERENCE_ERROR`` if the engine
            failed, or ``TIMEOUT`` with whatever had arrived by the deadline.
        """
        wait = self.timeout_seconds if timeout is None else timeout
        name = context.model_name
        session = context.session
        if session is None:
            return InferenceOutcome.inference_error("Session is not available.")

        accumulator = _Accumulator()

        def on_result(partial: str, done: bool) -> None:
            accumulator.append(partial)
            if done:
                accumulator.settle(InferenceOutcome.success(accumulator.text()))

        def on_error(exc: BaseException) -> None:
            logger.error("Inference failed for model '%s': %s", name, exc)
            accumulator.settle(InferenceOutcome.inference_error(str(exc)))

        logger.debug("Starting inference for model '%s' with input: %r", name, prompt)
        try:
            if prompt.strip():
                session.add_query_chunk(prompt)
            for image in images:
                logger.debug("Adding image to session of model '%s'.", name)
                session.add_image(image)
            session.generate_response_async(on_result, on_error)
        except Exception as exc:
            logger.exception("Failed to start inference for model '%s'.", name)
            return InferenceOutcome.inference_error(str(exc))

        try:
            outcome = accumulator.future.result(timeout=wait)
        except FutureTimeoutError:
            logger.warning(
                "Inference for model '%s' timed out after %.0fs; cancelling.", name, wait
            )
            try:
                session.cancel_generate_response_async()
            except Exception as exc:
                logger.error("Failed to cancel generation for model '%s': %s", name, exc)
            outcome = InferenceOutcome.timed_out(accumulator.text())
            accumulator.settle(outcome)

        logger.debug("Inference for model '%s' finished: %s", name, outcome.kind.value)
        return outcome
