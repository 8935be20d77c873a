"""Core functionality of the EdgeAI Gateway.

This package holds everything below the HTTP layer:

- **Configuration** (config.py): Pydantic Settings, ``EDGEAI_`` prefix
- **Model registry** (registry.py): catalog of models and their default
  generation parameters
- **Engine binding** (engine.py): engine/session interfaces and the
  ``transformers`` backend
- **Session lifecycle** (session_manager.py): create, reset and tear down
  one native session per model, serialized per model name
- **Bridge** (bridge.py): blocking wrapper over streaming generation
- **Service** (service.py): one logical inference call
- **Pipeline** (pipeline.py): two-stage description / attribute extraction
- **Image store** (image_store.py): uploaded PNGs served at ``/images``
- **Errors** (errors.py): outcome kinds and their HTTP status codes

Usage Example
-------------
    from edgeai.core import (
        InferenceRequest, InferenceService, ModelRegistry,
        SessionManager, SyncBridge, config,
    )

    registry = ModelRegistry.from_file(config.models_file)
    service = InferenceService(
        registry,
        SessionManager(config),
        SyncBridge(config.inference_timeout_seconds),
    )
    outcome = service.generate(InferenceRequest(prompt="Hello"))
    print(outcome.text)
"""

from edgeai.core.bridge import SyncBridge
from edgeai.core.config import EdgeAIConfig, config
from edgeai.core.errors import InferenceOutcome, OutcomeKind
from edgeai.core.image_store import ImageStore
from edgeai.core.pipeline import AttributeExtractionPipeline
from edgeai.core.registry import GenerationConfig, ModelDescriptor, ModelRegistry
from edgeai.core.service import InferenceRequest, InferenceService
from edgeai.core.session_manager import SessionManager

__all__ = [
    "AttributeExtractionPipeline",
    "EdgeAIConfig",
    "GenerationConfig",
    "ImageStore",
    "InferenceOutcome",
    "InferenceRequest",
    "InferenceService",
    "ModelDescriptor",
    "ModelRegistry",
    "OutcomeKind",
    "SessionManager",
    "SyncBridge",
    "config",
]
