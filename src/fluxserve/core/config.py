"""Configuration management for FluxServe.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the FLUXSERVE_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (FLUXSERVE_* prefix)
2. .env file in the project root
3. Default values defined in FluxServeConfig

Example .env file:
    FLUXSERVE_DEVICE=mps
    FLUXSERVE_PUBLIC_DIR=Public
    FLUXSERVE_RETENTION_POLICY=deliver_once
    FLUXSERVE_HF_TOKEN=hf_xxx

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Unlike earlier revisions, creating a configuration has no side effects on
disk: directories are created by :meth:`FluxServeConfig.ensure_directories`,
which the API lifespan calls on startup.

Usage Example
-------------
    from fluxserve.core.config import config

    print(config.images_dir)
    print(config.retention_policy)

Retention Policies
------------------
Exactly one retention policy is active for a running server:
- timer: completed jobs are evicted ``retention_seconds`` after completion
- deliver_once: a job and its artifact are evicted as soon as the image has
  been downloaded

Failed jobs are evicted ``retention_seconds`` after failing under either
policy.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FluxServeConfig(BaseSettings):
    """Main configuration for FluxServe.

    Attributes
    ----------
    Paths:
        public_dir : Path
            Public artifact directory; generated images live in ``images/``
        models_dir : Path
            HuggingFace cache directory for FLUX weights

    Model Settings:
        schnell_repo, dev_repo : str
            HuggingFace repositories for the fast and high-quality variants
        hf_token : str | None
            Default token for gated repositories (FLUX.1-dev)
        device : str
            Torch device for inference (cuda, mps or cpu)
        max_sequence_length : int
            T5 prompt token budget

    Retention:
        retention_policy : Literal["timer", "deliver_once"]
        retention_seconds : float

    Server:
        server_host, server_port, cors_origins, log_level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FLUXSERVE_",
        case_sensitive=False,
    )

    # Paths
    public_dir: Path = Field(
        default=Path("Public"),
        description="Public artifact directory (images are saved to its images/ subdirectory)",
    )
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache downloaded model weights",
    )

    # Model settings
    schnell_repo: str = Field(
        default="black-forest-labs/FLUX.1-schnell",
        description="HuggingFace repository for the fast (schnell) variant",
    )
    dev_repo: str = Field(
        default="black-forest-labs/FLUX.1-dev",
        description="HuggingFace repository for the high-quality (dev) variant",
    )
    hf_token: str | None = Field(
        default=None,
        description="HuggingFace token used when a request does not carry one",
    )
    device: str = Field(
        default="cuda",
        description="Device to run inference on (cuda/mps/cpu)",
    )
    max_sequence_length: int = Field(
        default=512,
        description="Maximum T5 prompt length in tokens",
        ge=1,
        le=512,
    )

    # Performance optimizations
    enable_model_cpu_offload: bool = Field(
        default=False,
        description="Enable CPU offloading for memory-constrained setups",
    )
    enable_attention_slicing: bool = Field(
        default=False,
        description="Enable attention slicing for lower VRAM usage",
    )

    # Retention
    retention_policy: Literal["timer", "deliver_once"] = Field(
        default="timer",
        description="When completed jobs are evicted: after a delay, or on first download",
    )
    retention_seconds: float = Field(
        default=3600.0,
        description="Delay before a completed (timer policy) or failed job is evicted",
        gt=0,
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=8080,
        description="Server port",
        ge=1024,
        le=65535,
    )
    cors_origins: list[str] = Field(
        default=["http://localhost:5173"],
        description="Origins allowed to call the API from a browser",
    )
    log_level: str = Field(
        default="INFO",
        description="Root logging level used by the entry points",
    )

    @property
    def images_dir(self) -> Path:
        """Directory holding generated artifacts and temporary source images."""
        return self.public_dir / "images"

    def ensure_directories(self) -> None:
        """Create the artifact and model cache directories if they are missing."""
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.models_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance
# Loads values from environment variables (FLUXSERVE_* prefix) and .env file.
config = FluxServeConfig()
