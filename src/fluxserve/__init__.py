"""FluxServe - asynchronous FLUX image generation service."""

__version__ = "0.1.0"
