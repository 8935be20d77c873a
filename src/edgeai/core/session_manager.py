"""Inference session lifecycle management for the EdgeAI Gateway.

This module provides :class:`SessionManager`, the single point of control for
creating, resetting and tearing down the native engine/session pair of each
model.

Key Responsibilities
--------------------
- **At most one live session per model** — the live :class:`SessionContext`
  of every model is tracked by name; initializing a model that is still live
  tears the stale session down first.
- **Serialization** — :meth:`SessionManager.exclusive` hands out a per-model
  re-entrant lock.  :meth:`SessionManager.lease` holds it from the clean-up
  that precedes initialization until the clean-up that follows the request,
  so two requests for the same model never touch each other's session.
- **Request-scoped parameters** — the engine and session are built from the
  :class:`~edgeai.core.registry.GenerationConfig` passed in by the caller,
  never from mutable descriptor state.
- **Fault-tolerant teardown** — closing the session and closing the engine
  are attempted independently; failures are logged and swallowed.

State Machine
-------------
``ABSENT -> INITIALIZING -> READY -> CLOSED (-> ABSENT)``

Usage
-----
::

    from edgeai.core.session_manager import SessionManager

    manager = SessionManager(config)
    with manager.lease(descriptor, descriptor.generation_config) as context:
        bridge.run(context, "Hello")

See Also
--------
- :mod:`edgeai.core.engine` — the engine/session interfaces managed here.
- :mod:`edgeai.core.bridge` — runs one generation on a leased context.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from edgeai.core.config import EdgeAIConfig
from edgeai.core.engine import (
    EngineFactory,
    EngineOptions,
    InferenceEngine,
    InferenceSession,
    SessionOptions,
    create_engine,
)
from edgeai.core.errors import SessionInitError, clean_up_error_message
from edgeai.core.registry import GenerationConfig, ModelDescriptor

logger = logging.getLogger(__name__)

CleanUpListener = Callable[[], None]


class SessionState(str, Enum):
    ABSENT = "absent"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class SessionContext:
    """A live engine/session pair and everything needed to rebuild or close it.

    Returned by :meth:`SessionManager.initialize` and passed back to
    :meth:`SessionManager.reset_session` and :meth:`SessionManager.clean_up`.

    Attributes:
        descriptor: Model the session was created for.
        generation_config: Request-scoped parameters the session was built with.
        engine: Loaded model weights.
        session: Current session; replaced by :meth:`SessionManager.reset_session`.
        state: ``READY`` while live, ``CLOSED`` after clean-up.
        cleanup_listeners: Callbacks run once when the context is cleaned up.
    """

    descriptor: ModelDescriptor
    generation_config: GenerationConfig
    engine: InferenceEngine
    session: InferenceSession | None
    state: SessionState = SessionState.READY
    cleanup_listeners: list[CleanUpListener] = field(default_factory=list)

    @property
    def model_name(self) -> str:
        return self.descriptor.name

    def add_cleanup_listener(self, listener: CleanUpListener) -> None:
        self.cleanup_listeners.append(listener)


class SessionManager:
    """Creates, resets and tears down inference sessions per model name.

    Attributes:
        _config (EdgeAIConfig):
            Application configuration — models directory and image limits.
        _engine_factory (EngineFactory):
            Callable building an :class:`InferenceEngine` from options.
        _live (dict[str, SessionContext]):
            Live context of each model name.
        _initializing (set[str]):
            Model names whose engine is being built.
    """

    def __init__(
        self,
        config: EdgeAIConfig,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self._config = config
        self._engine_factory = engine_factory or create_engine

        self._live: dict[str, SessionContext] = {}
        self._initializing: set[str] = set()
        self._locks: dict[str, threading.RLock] = {}

        # Guards the three dictionaries above; never held across engine calls.
        self._guard = threading.Lock()

    # -- Locking ------------------------------------------------------------

    def _lock_for(self, model_name: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(model_name)
            if lock is None:
                lock = self._locks[model_name] = threading.RLock()
            return lock

    @contextmanager
    def exclusive(self, model_name: str) -> Iterator[None]:
        """Hold the model's lock for the duration of the ``with`` block.

        The lock is re-entrant, so a caller holding it may run several
        leases (e.g. both stages of a pipeline) without interleaving with
        other requests for the same model.
        """
        lock = self._lock_for(model_name)
        with lock:
            yield

    # -- Lifecycle ----------------------------------------------------------

    def initialize(
        self,
        descriptor: ModelDescriptor,
        generation_config: GenerationConfig,
    ) -> SessionContext:
        """Build the engine and session for a model.

        Args:
            descriptor: Model to load.
            generation_config: Request-scoped generation parameters.

        Returns:
            The live :class:`SessionContext`.

        Raises:
            SessionInitError: If the engine or the session cannot be created.
                The model is left ``ABSENT``.
        """
        name = descriptor.name
        with self.exclusive(name):
            if self.state(name) is SessionState.READY:
                logger.warning("Model '%s' still has a live session; cleaning it up.", name)
                self.clean_up_model(name)

            engine_options = self._engine_options(descriptor, generation_config)
            session_options = self._session_options(descriptor, generation_config)

            logger.info("Initializing model '%s'...", name)
            logger.debug(
                "Model '%s': path=%s accelerator=%s max_tokens=%d max_images=%d",
                name,
                engine_options.model_path,
                engine_options.accelerator,
                engine_options.max_tokens,
                engine_options.max_num_images,
            )

            with self._guard:
                self._initializing.add(name)

            engine: InferenceEngine | None = None
            try:
                engine = self._engine_factory(engine_options)
                session = engine.create_session(session_options)
            except Exception as exc:
                logger.error("Failed to initialize model '%s': %s", name, exc, exc_info=True)
                if engine is not None:
                    self._close_quietly(engine, "engine", name)
                raise SessionInitError(clean_up_error_message(str(exc)), name) from exc
            finally:
                with self._guard:
                    self._initializing.discard(name)

            context = SessionContext(
                descriptor=descriptor,
                generation_config=generation_config,
                engine=engine,
                session=session,
            )
            with self._guard:
                self._live[name] = context

            logger.info("Model '%s' initialized.", name)
            return context

    def reset_session(self, context: SessionContext) -> None:
        """Replace the session with a fresh one, keeping the loaded engine.

        Clears conversational state without reloading model weights.  The
        new session is built with the same options as the old one.

        Raises:
            SessionInitError: If the new session cannot be created.  The
                context then has no session until it is cleaned up.
        """
        name = context.model_name
        if context.state is not SessionState.READY:
            logger.debug("Reset skipped: model '%s' is not live.", name)
            return

        with self.exclusive(name):
            logger.info("Resetting session for model '%s'.", name)
            if context.session is not None:
                self._close_quietly(context.session, "session", name)
                context.session = None
            try:
                context.session = context.engine.create_session(
                    self._session_options(context.descriptor, context.generation_config)
                )
            except Exception as exc:
                logger.error("Failed to reset session for model '%s': %s", name, exc)
                raise SessionInitError(clean_up_error_message(str(exc)), name) from exc
            logger.info("Session reset for model '%s'.", name)

    def clean_up(self, context: SessionContext) -> None:
        """Close a context's session and engine and forget it.

        Safe to call repeatedly; a context that is already closed is left
        alone.  Close failures are logged and never raised.
        """
        name = context.model_name
        with self.exclusive(name):
            if context.state is SessionState.CLOSED:
                return

            if context.session is not None:
                self._close_quietly(context.session, "session", name)
                context.session = None
            self._close_quietly(context.engine, "engine", name)

            for listener in context.cleanup_listeners:
                try:
                    listener()
                except Exception:
                    logger.exception("Clean-up listener failed for model '%s'.", name)
            context.cleanup_listeners.clear()
            context.state = SessionState.CLOSED

            with self._guard:
                if self._live.get(name) is context:
                    del self._live[name]

            logger.info("Clean up done for model '%s'.", name)

    def clean_up_model(self, model_name: str) -> None:
        """Clean up the live context of a model, if there is one."""
        with self._guard:
            context = self._live.get(model_name)
        if context is None:
            return
        self.clean_up(context)

    @contextmanager
    def lease(
        self,
        descriptor: ModelDescriptor,
        generation_config: GenerationConfig,
    ) -> Iterator[SessionContext]:
        """Run one logical inference call on a freshly initialized session.

        Cleans up before initializing (no stale session survives a failed or
        abandoned request) and cleans up afterwards (no native resources are
        held between requests), all while holding the model's lock.

        Raises:
            SessionInitError: If initialization fails.
        """
        with self.exclusive(descriptor.name):
            self.clean_up_model(descriptor.name)
            context = self.initialize(descriptor, generation_config)
            try:
                yield context
            finally:
                self.clean_up(context)

    def shutdown(self) -> None:
        """Clean up every live session."""
        with self._guard:
            contexts = list(self._live.values())
        for context in contexts:
            self.clean_up(context)

    # -- Introspection ------------------------------------------------------

    def state(self, model_name: str) -> SessionState:
        with self._guard:
            if model_name in self._initializing:
                return SessionState.INITIALIZING
            if model_name in self._live:
                return SessionState.READY
        return SessionState.ABSENT

    def live_models(self) -> list[str]:
        with self._guard:
            return sorted(self._live)

    # -- Helpers ------------------------------------------------------------

    def _engine_options(
        self,
        descriptor: ModelDescriptor,
        generation_config: GenerationConfig,
    ) -> EngineOptions:
        # A directory under models_dir wins over a hub repo id.
        local_path = self._config.models_dir / descriptor.model_id
        model_path = str(local_path) if local_path.exists() else descriptor.model_id
        return EngineOptions(
            model_path=model_path,
            backend=descriptor.backend,
            max_tokens=generation_config.max_tokens,
            accelerator=generation_config.accelerator,
            max_num_images=self._config.max_image_count if descriptor.llm_support_image else 0,
            cache_dir=self._config.models_dir,
        )

    @staticmethod
    def _session_options(
        descriptor: ModelDescriptor,
        generation_config: GenerationConfig,
    ) -> SessionOptions:
        return SessionOptions(
            top_k=generation_config.top_k,
            top_p=generation_config.top_p,
            temperature=generation_config.temperature,
            enable_vision_modality=descriptor.llm_support_image,
        )

    @staticmethod
    def _close_quietly(resource: InferenceEngine | InferenceSession, label: str, name: str) -> None:
        try:
            resource.close()
        except Exception as exc:
            logger.error("Failed to close the inference %s of '%s': %s", label, name, exc)
