"""Configuration management for the EdgeAI Gateway.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the EDGEAI_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (EDGEAI_* prefix)
2. .env file in the project root
3. Default values defined in EdgeAIConfig

Example .env file:
    EDGEAI_SERVER_PORT=12345
    EDGEAI_IMAGES_DIR=images
    EDGEAI_INFERENCE_TIMEOUT_SECONDS=900
    EDGEAI_MODELS_FILE=/opt/edgeai/models.json

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from edgeai.core.config import config

    print(config.server_port)
    print(config.images_dir)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- images_dir: PNG files uploaded with image requests (served at /images/...)
- models_dir: Local model weights and the Hugging Face download cache
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Catalog shipped with the package.  Replace it with EDGEAI_MODELS_FILE.
DEFAULT_MODELS_FILE = Path(__file__).resolve().parent.parent / "data" / "models.json"

DEFAULT_IMAGE_PROMPT = (
    "Describe the person in this image in detail. Cover their apparent gender, "
    "face shape, hair (color, length and style), eye color, skin tone, height, "
    "build, clothing on the upper and lower body, accessories, any distinctive "
    "features, and their approximate age range."
)


class EdgeAIConfig(BaseSettings):
    """Main configuration for the EdgeAI Gateway.

    Attributes
    ----------
    Server Settings:
        server_host : str
            Bind address (0.0.0.0 for LAN and localhost reachability)
        server_port : int
            Listening port (1024-65535)
        log_level : Literal["DEBUG", "INFO", "WARNING", "ERROR"]
            Root logging level applied by ``main()``

    Model Settings:
        models_file : Path
            JSON model catalog loaded into the model registry at startup
        models_dir : Path
            Directory holding local model weights; also the download cache
        max_image_count : int
            Maximum number of images attached to one inference session for
            models that support the image modality

    Inference Settings:
        inference_timeout_seconds : float
            Upper bound on the blocking wait for one inference call
        default_image_prompt : str
            Stage 1 prompt used by ``/edgeai_image`` when the caller sends none

    Image Storage:
        images_dir : Path
            Directory for uploaded images served at ``/images/{filename}``
        image_retention_hours : float
            Stored images older than this are purged; 0 disables purging
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="EDGEAI_",
        case_sensitive=False,
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=12345,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root logging level",
    )

    # Model settings
    models_file: Path = Field(
        default=DEFAULT_MODELS_FILE,
        description="JSON model catalog",
    )
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory for local model weights and the download cache",
    )
    max_image_count: int = Field(
        default=10,
        description="Maximum images per session for image-capable models",
        ge=1,
        le=64,
    )

    # Inference settings
    inference_timeout_seconds: float = Field(
        default=900.0,
        description="Upper bound on the blocking wait for one inference call",
        gt=0.0,
    )
    default_image_prompt: str = Field(
        default=DEFAULT_IMAGE_PROMPT,
        description="Stage 1 prompt for /edgeai_image when none is supplied",
    )

    # Image storage
    images_dir: Path = Field(
        default=Path("images"),
        description="Directory for uploaded images",
    )
    image_retention_hours: float = Field(
        default=24.0,
        description="Stored images older than this are purged (0 disables)",
        ge=0.0,
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.models_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance, loaded from EDGEAI_* variables and .env.
config = EdgeAIConfig()
