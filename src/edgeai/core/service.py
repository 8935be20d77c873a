"""One logical inference call: resolve, lease, bridge.

:class:`InferenceService` is what route handlers call.  It resolves the
requested model, derives the request-scoped generation parameters, leases a
fresh session from the :class:`~edgeai.core.session_manager.SessionManager`
and runs the :class:`~edgeai.core.bridge.SyncBridge` on it.  Every failure
mode is returned as an :class:`~edgeai.core.errors.InferenceOutcome`.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from PIL import Image

from edgeai.core.bridge import SyncBridge
from edgeai.core.errors import InferenceOutcome, SessionInitError
from edgeai.core.registry import GenerationOverrides, ModelDescriptor, ModelRegistry
from edgeai.core.session_manager import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class InferenceRequest:
    """Input of one inference call."""

    prompt: str
    images: list[Image.Image] = field(default_factory=list)
    model_name: str | None = None
    overrides: GenerationOverrides | None = None


class InferenceService:
    def __init__(
        self,
        registry: ModelRegistry,
        sessions: SessionManager,
        bridge: SyncBridge,
    ) -> None:
        self.registry = registry
        self.sessions = sessions
        self.bridge = bridge

    def resolve_model(self, model_name: str | None) -> ModelDescriptor | None:
        descriptor = self.registry.resolve(model_name)
        if descriptor is None:
            logger.warning(
                "No model available (requested=%r, catalog=%s).",
                model_name,
                self.registry.names,
            )
        return descriptor

    def generate(self, request: InferenceRequest) -> InferenceOutcome:
        """Resolve the request's model and run one inference call on it."""
        descriptor = self.resolve_model(request.model_name)
        if descriptor is None:
            return InferenceOutcome.model_unavailable()
        return self.generate_with(descriptor, request.prompt, request.images, request.overrides)

    def generate_with(
        self,
        descriptor: ModelDescriptor,
        prompt: str,
        images: Sequence[Image.Image] = (),
        overrides: GenerationOverrides | None = None,
    ) -> InferenceOutcome:
        """Run one inference call on an already resolved model.

        The session lives exactly as long as this call: it is cleaned up
        before initialization and again after the bridge returns.
        """
        generation_config = descriptor.generation_config.with_overrides(overrides)
        try:
            with self.sessions.lease(descriptor, generation_config) as context:
                return self.bridge.run(context, prompt, images)
        except SessionInitError as exc:
            return InferenceOutcome.init_error(exc.message)
