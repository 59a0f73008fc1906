"""Exception hierarchy for FluxServe.

Everything raised inside a generation job is caught by the dispatcher and
recorded as the job's failure message, so these exceptions carry
human-readable messages rather than error codes.
"""


class FluxServeError(Exception):
    """Base class for all FluxServe errors."""


class GenerationError(FluxServeError):
    """A generation job could not produce an image."""


class UnknownModelError(FluxServeError):
    """The requested model variant is not one of the supported variants."""

    def __init__(self, model: str) -> None:
        super().__init__(f"Unknown model: {model}")
        self.model = model


class ImageDecodeError(FluxServeError):
    """A source image could not be read or rasterised."""


class ImageSaveError(FluxServeError):
    """A raster could not be written to its destination."""
