"""Inference engine binding.

The gateway talks to on-device models through two small interfaces:

- :class:`InferenceEngine` owns the loaded weights.  It is expensive to
  create and is closed when the model is torn down.
- :class:`InferenceSession` owns the conversational state built on top of an
  engine.  Input is queued with :meth:`~InferenceSession.add_query_chunk` and
  :meth:`~InferenceSession.add_image`, then
  :meth:`~InferenceSession.generate_response_async` returns immediately and
  reports ``(partial_text, done)`` increments to a listener from a background
  thread.

:class:`TransformersEngine` implements the interfaces with Hugging Face
``transformers``.  Generation runs in a worker thread that feeds a
``TextIteratorStreamer``; a second thread drains the streamer into the
listener.  Cancellation is cooperative through a ``StoppingCriteria`` that
watches the session's cancel event.

``torch`` and ``transformers`` are imported lazily inside the methods that
need them, so the gateway imports (and its tests run) without them installed.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from PIL import Image

logger = logging.getLogger(__name__)

ResultListener = Callable[[str, bool], None]
ErrorListener = Callable[[BaseException], None]

# Bounded wait used when a closing session joins its worker threads.
_JOIN_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class EngineOptions:
    """Options for loading model weights."""

    model_path: str
    backend: str = "transformers"
    max_tokens: int = 1024
    accelerator: str = "gpu"
    max_num_images: int = 0
    cache_dir: Path | None = None


@dataclass(frozen=True)
class SessionOptions:
    """Sampling options for one inference session."""

    top_k: int
    top_p: float
    temperature: float
    enable_vision_modality: bool = False


class InferenceSession(ABC):
    """Conversational state on top of an :class:`InferenceEngine`."""

    @abstractmethod
    def add_query_chunk(self, text: str) -> None:
        """Queue a piece of prompt text."""

    @abstractmethod
    def add_image(self, image: Image.Image) -> None:
        """Queue an image.  Must be called after the text chunk it belongs to."""

    @abstractmethod
    def generate_response_async(
        self,
        result_listener: ResultListener,
        error_listener: ErrorListener | None = None,
    ) -> None:
        """Start generation over the queued input and return immediately.

        ``result_listener`` receives each text increment with ``done=False``
        and is called exactly once with ``done=True`` at the end.  When
        generation fails, ``error_listener`` is called instead of the final
        ``done`` notification.
        """

    @abstractmethod
    def cancel_generate_response_async(self) -> None:
        """Ask a running generation to stop as soon as possible."""

    @abstractmethod
    def close(self) -> None:
        """Release the session.  Running generation is cancelled."""


class InferenceEngine(ABC):
    """Loaded model weights able to create sessions."""

    @abstractmethod
    def create_session(self, options: SessionOptions) -> InferenceSession:
        """Create a fresh session with the given sampling options."""

    @abstractmethod
    def close(self) -> None:
        """Release the model weights."""


EngineFactory = Callable[[EngineOptions], InferenceEngine]


# ---------------------------------------------------------------------------
# transformers backend.
# ---------------------------------------------------------------------------


def _resolve_device(accelerator: str) -> str:
    """Map an accelerator label to a torch device string."""
    import torch

    if accelerator == "gpu":
        if torch.cuda.is_available():
            return "cuda"
        logger.warning("GPU accelerator requested but CUDA is unavailable; using CPU.")
    return "cpu"


class TransformersEngine(InferenceEngine):
    """Engine backed by a ``transformers`` model and processor.

    Image-capable models (``max_num_images > 0``) are loaded with
    ``AutoModelForImageTextToText``; text-only models with
    ``AutoModelForCausalLM``.
    """

    def __init__(self, options: EngineOptions) -> None:
        from transformers import (
            AutoModelForCausalLM,
            AutoModelForImageTextToText,
            AutoProcessor,
        )

        self.options = options
        self.device = _resolve_device(options.accelerator)
        cache_dir = str(options.cache_dir) if options.cache_dir else None

        logger.info(
            "Loading model '%s' (device=%s, max_images=%d).",
            options.model_path,
            self.device,
            options.max_num_images,
        )

        model_cls = (
            AutoModelForImageTextToText if options.max_num_images > 0 else AutoModelForCausalLM
        )
        self.processor = AutoProcessor.from_pretrained(options.model_path, cache_dir=cache_dir)
        self.model = model_cls.from_pretrained(
            options.model_path,
            cache_dir=cache_dir,
            torch_dtype="auto",
        ).to(self.device)
        self.model.eval()

        self._closed = False
        logger.info("Model '%s' loaded.", options.model_path)

    @property
    def tokenizer(self):
        return getattr(self.processor, "tokenizer", self.processor)

    @staticmethod
    def chat_messages(prompt: str, images: list[Image.Image]) -> list[dict]:
        """Build the single user turn passed to the chat template.

        Multimodal processors expect typed content blocks; plain tokenizer
        templates (ChatML, Llama) concatenate ``content`` as a string, so a
        text-only turn carries the prompt string itself.
        """
        if not images:
            return [{"role": "user", "content": prompt}]
        content: list[dict] = [{"type": "image"} for _ in images]
        content.append({"type": "text", "text": prompt})
        return [{"role": "user", "content": content}]

    def render_prompt(self, prompt: str, images: list[Image.Image]) -> str:
        """Apply the chat template without tokenizing."""
        return self.processor.apply_chat_template(
            self.chat_messages(prompt, images),
            tokenize=False,
            add_generation_prompt=True,
        )

    def build_inputs(self, prompt: str, images: list[Image.Image]):
        """Apply the chat template and encode the prompt and images."""
        text = self.render_prompt(prompt, images)
        proc_kwargs: dict = {"text": [text], "return_tensors": "pt"}
        if images:
            proc_kwargs["images"] = images
        return self.processor(**proc_kwargs).to(self.device)

    def create_session(self, options: SessionOptions) -> TransformersSession:
        if self._closed:
            raise RuntimeError("Engine is closed.")
        return TransformersSession(self, options)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.model = None
        self.processor = None

        import gc

        gc.collect()
        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except ImportError:
            pass
        logger.info("Model '%s' released.", self.options.model_path)


class TransformersSession(InferenceSession):
    """Session over a :class:`TransformersEngine`.

    Queued text and images are consumed by each generation call.
    """

    def __init__(self, engine: TransformersEngine, options: SessionOptions) -> None:
        self._engine = engine
        self._options = options
        self._chunks: list[str] = []
        self._images: list[Image.Image] = []
        self._cancel_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._closed = False

    def add_query_chunk(self, text: str) -> None:
        self._chunks.append(text)

    def add_image(self, image: Image.Image) -> None:
        if not self._options.enable_vision_modality:
            raise ValueError("Vision modality is not enabled for this session.")
        if len(self._images) >= self._engine.options.max_num_images:
            raise ValueError(
                f"Too many images: at most {self._engine.options.max_num_images} per session."
            )
        self._images.append(image.convert("RGB"))

    def generate_response_async(
        self,
        result_listener: ResultListener,
        error_listener: ErrorListener | None = None,
    ) -> None:
        if self._closed:
            raise RuntimeError("Session is closed.")

        import torch
        from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

        prompt = "".join(self._chunks)
        images = list(self._images)
        self._chunks.clear()
        self._images.clear()
        self._cancel_event.clear()

        inputs = self._engine.build_inputs(prompt, images)
        streamer = TextIteratorStreamer(
            self._engine.tokenizer,
            skip_prompt=True,
            skip_special_tokens=True,
        )
        cancel_event = self._cancel_event

        class _CancelCriteria(StoppingCriteria):
            def __call__(self, input_ids, scores, **kwargs):
                return cancel_event.is_set()

        do_sample = self._options.temperature > 0.0
        gen_kwargs = dict(
            **inputs,
            streamer=streamer,
            max_new_tokens=self._engine.options.max_tokens,
            do_sample=do_sample,
            stopping_criteria=StoppingCriteriaList([_CancelCriteria()]),
        )
        if do_sample:
            gen_kwargs.update(
                temperature=self._options.temperature,
                top_k=self._options.top_k,
                top_p=self._options.top_p,
            )

        failures: list[BaseException] = []

        def _generate() -> None:
            try:
                with torch.no_grad():
                    self._engine.model.generate(**gen_kwargs)
            except Exception as exc:
                logger.exception("Generation failed.")
                failures.append(exc)
                streamer.end()

        generate_thread = threading.Thread(target=_generate, name="edgeai-generate", daemon=True)

        def _drain() -> None:
            for piece in streamer:
                if piece:
                    result_listener(piece, False)
            generate_thread.join()
            if failures:
                if error_listener is not None:
                    error_listener(failures[0])
                return
            result_listener("", True)

        drain_thread = threading.Thread(target=_drain, name="edgeai-stream", daemon=True)
        self._threads = [generate_thread, drain_thread]
        generate_thread.start()
        drain_thread.start()

    def cancel_generate_response_async(self) -> None:
        self._cancel_event.set()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_event.set()
        for thread in self._threads:
            if thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=_JOIN_TIMEOUT_SECONDS)
        self._threads = []


ENGINE_BACKENDS: dict[str, Callable[[EngineOptions], InferenceEngine]] = {
    "transformers": TransformersEngine,
}


def create_engine(options: EngineOptions) -> InferenceEngine:
    """Instantiate the engine backend named by ``options.backend``.

    Raises:
        ValueError: If the backend is unknown.
    """
    try:
        backend = ENGINE_BACKENDS[options.backend]
    except KeyError:
        raise ValueError(f"Unknown engine backend: {options.backend}") from None
    return backend(options)
