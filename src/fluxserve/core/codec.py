"""Conversion between image files, packed rasters, and float tensors.

The inference engine works on float tensors laid out as ``(H, W, C)``;
image files on disk are 8-bit RGB(A).  This module is the only place that
crosses that boundary, in both directions:

Decoding (file or bytes → tensor)
---------------------------------
1. Open the image with Pillow.
2. Optionally scale so the longer edge equals ``max_edge`` (aspect ratio
   preserved).
3. Floor both dimensions to a multiple of 64 (FLUX works on 16-pixel
   latent patches of 8x downsampled images).
4. Rasterise to RGBA and drop the alpha channel → ``(H, W, 3)`` uint8.
5. Optionally map to ``[-1, 1]`` with ``(raster / 255) * 2 - 1``.

Encoding (tensor → raster → file)
---------------------------------
1. Append a fully opaque alpha channel to 3-channel tensors.
2. Scale ``[0, 1]`` floats to 8-bit with ``round(tensor * 255)``.
3. Save through Pillow, which picks the container from the file extension
   (PNG when the destination has none).

Buffer ownership
----------------
:class:`RasterImage` owns its numpy buffer.  :meth:`RasterImage.to_pil`
hands that buffer to Pillow with ``Image.frombuffer``; Pillow holds a
buffer-protocol reference for as long as the returned image exists, so the
pixels stay valid for the consumer's lifetime regardless of what happens
to the producer.  Closing the raster (or leaving its ``with`` block)
releases the Pillow view deterministically.

Latent packing
--------------
FLUX keeps latents "packed": every 2x2 spatial patch of the 16-channel
latent image is folded into one 64-wide token.  :func:`unpack_latents`
restores the ``(1, H/8, W/8, 16)`` layout the VAE decoder expects and
:func:`pack_latents` is its exact inverse.
"""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image

from fluxserve.core.errors import ImageDecodeError, ImageSaveError
from fluxserve.core.request import normalize_dimension

logger = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes]

LATENT_CHANNELS = 16
PATCH_SIZE = 2
# Pixels per packed latent token along each axis: 8x VAE downsampling * 2x2 patch.
LATENT_SCALE = 16

_MODES = {3: "RGB", 4: "RGBA"}


class RasterImage:
    """A dense ``(H, W, C)`` uint8 pixel buffer with C in {3, 4}.

    Args:
        data: Pixel array.  Copied only if it is not already C-contiguous
            uint8.

    Raises:
        ValueError: If the array is not 3-D uint8 with 3 or 4 channels.
    """

    def __init__(self, data: np.ndarray) -> None:
        if data.dtype != np.uint8:
            raise ValueError(f"Raster data must be uint8, got {data.dtype}")
        if data.ndim != 3 or data.shape[2] not in _MODES:
            raise ValueError(f"Raster data must have shape (H, W, 3|4), got {data.shape}")

        self._data = np.ascontiguousarray(data)
        self._pil: Image.Image | None = None

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def height(self) -> int:
        return self._data.shape[0]

    @property
    def width(self) -> int:
        return self._data.shape[1]

    @property
    def channels(self) -> int:
        return self._data.shape[2]

    @property
    def mode(self) -> str:
        return _MODES[self.channels]

    def to_pil(self) -> Image.Image:
        """Return a Pillow image backed by this raster's buffer.

        RGBA rasters are mapped without copying (the Pillow image keeps the
        numpy buffer alive); RGB rasters are copied by Pillow because it
        cannot map 3-byte pixels.  The image is created once and reused
        until :meth:`close`.
        """
        if self._pil is None:
            self._pil = Image.frombuffer(
                self.mode,
                (self.width, self.height),
                self._data,
                "raw",
                self.mode,
                0,
                1,
            )
        return self._pil

    def close(self) -> None:
        """Release the Pillow view, if one was created."""
        if self._pil is not None:
            self._pil.close()
            self._pil = None

    def __enter__(self) -> RasterImage:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Decoding.
# ---------------------------------------------------------------------------


def _open(source: ImageSource) -> Image.Image:
    if isinstance(source, (bytes, bytearray)):
        return Image.open(BytesIO(source))
    return Image.open(source)


def load_image(source: ImageSource, max_edge: int | None = None) -> RasterImage:
    """Decode an image file (or encoded bytes) into an RGB raster.

    Args:
        source: Path to an image file, or the encoded image bytes.
        max_edge: If given, scale so the longer edge equals this many
            pixels, preserving the aspect ratio.

    Returns:
        :class:`RasterImage` of shape ``(H, W, 3)`` with both dimensions a
        multiple of 64.

    Raises:
        ImageDecodeError: If the source cannot be read or decoded, or if
            the resulting image would be smaller than 64 pixels on an edge.
        ValueError: If ``max_edge`` is not positive.
    """
    if max_edge is not None and max_edge < 1:
        raise ValueError(f"max_edge must be positive, got {max_edge}")

    try:
        with _open(source) as image:
            rgba = image.convert("RGBA")
    except (OSError, ValueError) as exc:
        raise ImageDecodeError(f"Failed to read image: {exc}") from exc

    width, height = rgba.size
    if max_edge is not None:
        scale = max_edge / max(width, height)
        width, height = round(width * scale), round(height * scale)

    width, height = normalize_dimension(width), normalize_dimension(height)
    if width == 0 or height == 0:
        raise ImageDecodeError(
            f"Image of size {rgba.size[0]}x{rgba.size[1]} is too small "
            f"(each edge must be at least 64 pixels after scaling)"
        )

    if (width, height) != rgba.size:
        rgba = rgba.resize((width, height), Image.Resampling.LANCZOS)

    # Drop alpha: (H, W, 4) -> (H, W, 3).
    pixels = np.asarray(rgba, dtype=np.uint8)[:, :, :3]
    return RasterImage(np.ascontiguousarray(pixels))


def load_image_tensor(
    source: ImageSource,
    max_edge: int | None = None,
    normalize: bool = True,
) -> np.ndarray:
    """Decode an image into a float32 ``(H, W, 3)`` tensor.

    With ``normalize=True`` samples are mapped to ``[-1, 1]``; otherwise
    they keep their 0-255 range as floats.
    """
    raster = load_image(source, max_edge=max_edge)
    tensor = raster.data.astype(np.float32)
    if normalize:
        tensor = (tensor / 255.0) * 2.0 - 1.0
    return tensor


# ---------------------------------------------------------------------------
# Encoding.
# ---------------------------------------------------------------------------


def to_raster(tensor: np.ndarray) -> RasterImage:
    """Convert a ``[0, 1]`` float tensor of shape ``(H, W, 3|4)`` to RGBA.

    Out-of-range samples are clipped rather than wrapped.

    Raises:
        ValueError: If the tensor is not ``(H, W, 3)`` or ``(H, W, 4)``.
    """
    array = np.asarray(tensor, dtype=np.float32)
    if array.ndim != 3 or array.shape[2] not in _MODES:
        raise ValueError(f"Tensor must have shape (H, W, 3|4), got {array.shape}")

    if array.shape[2] == 3:
        alpha = np.ones(array.shape[:2] + (1,), dtype=np.float32)
        array = np.concatenate([array, alpha], axis=2)

    pixels = np.clip(np.rint(array * 255.0), 0, 255).astype(np.uint8)
    return RasterImage(pixels)


def save_image(image: RasterImage | np.ndarray, destination: str | Path) -> Path:
    """Encode a raster (or ``[0, 1]`` tensor) to ``destination``.

    The container format follows the destination's extension; a
    destination without one is written as PNG.

    Returns:
        The destination path.

    Raises:
        ImageSaveError: If the file cannot be created or the encoder fails.
    """
    path = Path(destination)
    raster = image if isinstance(image, RasterImage) else to_raster(image)
    image_format = None if path.suffix else "PNG"

    try:
        raster.to_pil().save(path, format=image_format)
    except (OSError, ValueError, KeyError) as exc:
        raise ImageSaveError(f"Failed to save image to {path}: {exc}") from exc
    finally:
        if raster is not image:
            raster.close()

    logger.debug("Saved %dx%d %s image to %s.", raster.width, raster.height, raster.mode, path)
    return path


# ---------------------------------------------------------------------------
# Latent packing.
# ---------------------------------------------------------------------------


def unpack_latents(latents: np.ndarray, height: int, width: int) -> np.ndarray:
    """Unfold packed FLUX latents into a ``(1, H/8, W/8, 16)`` latent image.

    Args:
        latents: Packed latents with ``(H/16) * (W/16) * 64`` elements,
            typically shaped ``(1, (H/16) * (W/16), 64)``.
        height: Image height in pixels.
        width: Image width in pixels.

    Raises:
        ValueError: If the element count does not match the dimensions.
    """
    h, w = height // LATENT_SCALE, width // LATENT_SCALE
    blocks = np.reshape(latents, (1, h, w, LATENT_CHANNELS, PATCH_SIZE, PATCH_SIZE))
    # (1, h, w, c, py, px) -> (1, h, py, w, px, c)
    spatial = blocks.transpose(0, 1, 4, 2, 5, 3)
    return spatial.reshape(1, h * PATCH_SIZE, w * PATCH_SIZE, LATENT_CHANNELS)


def pack_latents(latents: np.ndarray, height: int, width: int) -> np.ndarray:
    """Fold a ``(1, H/8, W/8, 16)`` latent image back into packed tokens.

    Exact inverse of :func:`unpack_latents`; returns
    ``(1, (H/16) * (W/16), 64)``.
    """
    h, w = height // LATENT_SCALE, width // LATENT_SCALE
    spatial = np.reshape(latents, (1, h, PATCH_SIZE, w, PATCH_SIZE, LATENT_CHANNELS))
    # (1, h, py, w, px, c) -> (1, h, w, c, py, px)
    blocks = spatial.transpose(0, 1, 3, 5, 2, 4)
    return blocks.reshape(1, h * w, LATENT_CHANNELS * PATCH_SIZE * PATCH_SIZE)
