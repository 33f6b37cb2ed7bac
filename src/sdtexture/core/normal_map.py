"""Tangent-space normal maps from generated color textures.

A generated albedo texture is used as a height proxy: every pixel's
luminance is estimated from its red and green channels, a 3x3 Sobel-like
kernel measures the local gradient, and the gradient is turned into a
normal vector packed into RGB.

Algorithm
---------
For each pixel ``(x, y)``:

1. Reduce the eight neighbours to a luminance ``(r + g + g) / 3`` (green
   counts twice, blue is ignored).
2. ``edge_x`` and ``edge_y`` are the neighbour differences weighted
   0.25 / 0.5 / 0.25 across the row / column.
3. Both gradients are multiplied by ``strength``.
4. ``(edge_x, edge_y, 1)`` is normalised and remapped with ``c * 0.5 + 0.5``.
5. The result is written as RGB with alpha 1.

Coordinates
-----------
Array functions work in texture space: row 0 is the *bottom* row of the
texture, as in game-engine texture memory.  :func:`normal_map_image` and
:func:`normal_map_png` take ordinary top-down images and flip them so that
the green channel points "up" in the picture.

Edge Policy
-----------
Reads outside the texture follow ``edge_mode``:

- ``"wrap"`` (default): coordinates repeat, matching the default texture
  wrap mode, so tiling textures get seamless normals.
- ``"clamp"``: coordinates are clamped to the nearest valid texel.

A flat input yields ``(0.5, 0.5, 1.0)`` for every pixel, edges and corners
included, under both policies.
"""

import io
import logging
from typing import Literal

import numpy as np
from PIL import Image

from .errors import InvalidParameter

logger = logging.getLogger(__name__)

EdgeMode = Literal["wrap", "clamp"]

MAX_STRENGTH = 10.0

# Luminance weights over (r, g, b): green counted twice, blue ignored.
LUMINANCE_WEIGHTS = np.array([1.0, 2.0, 0.0]) / 3.0


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Reduce a color array to an (H, W) luminance array.

    Args:
        pixels: (H, W, C) color array, or an (H, W) grayscale array.  Integer
            arrays are treated as 8-bit and scaled to 0-1.

    Returns:
        Float64 luminance, 0-1 for 8-bit input.
    """
    data = _as_float(np.asarray(pixels))
    if data.ndim == 2:
        return data
    if data.shape[2] < 3:
        # Gray or gray+alpha: r == g, so the weighted sum is the gray value.
        return data[..., 0]
    return data[..., :3] @ LUMINANCE_WEIGHTS


def check_filter_parameters(strength: float, edge_mode: str) -> None:
    """Validate normal map settings without touching any pixels.

    Raises:
        InvalidParameter: If ``strength`` is not a finite number in 0-10 or
            ``edge_mode`` is neither ``"wrap"`` nor ``"clamp"``.
    """
    if edge_mode not in ("wrap", "clamp"):
        raise InvalidParameter(f"edge_mode must be 'wrap' or 'clamp', got {edge_mode!r}")
    if not np.isfinite(strength) or not 0.0 <= strength <= MAX_STRENGTH:
        raise InvalidParameter(f"strength must be 0-{MAX_STRENGTH:g}, got {strength}")


def synthesize_normal_map(
    pixels: np.ndarray,
    strength: float = 0.5,
    edge_mode: EdgeMode = "wrap",
) -> np.ndarray:
    """Derive a normal map from a color texture.

    Args:
        pixels: (H, W, C) color array in texture space (row 0 at the bottom).
            ``uint8`` input is scaled from 0-255; float input is taken as 0-1.
            Grayscale (H, W) arrays are accepted as luminance directly.
        strength: Gradient multiplier, 0-10.
        edge_mode: ``"wrap"`` or ``"clamp"`` addressing at the borders.

    Returns:
        (H, W, 4) float64 array of RGBA normals in 0-1, alpha 1.

    Raises:
        InvalidParameter: For an empty image, unsupported shape, out-of-range
            strength or unknown edge mode.
    """
    check_filter_parameters(strength, edge_mode)

    array = np.asarray(pixels)
    if array.ndim not in (2, 3) or array.size == 0:
        raise InvalidParameter(
            f"Expected a non-empty (H, W) or (H, W, C) array, got shape {array.shape}"
        )
    lum = luminance(array)

    # One texel of border on every side, filled according to the edge policy.
    padded = np.pad(lum, 1, mode="wrap" if edge_mode == "wrap" else "edge")

    # Neighbourhood views: first index is the row offset (y), second the column (x).
    def at(dy: int, dx: int) -> np.ndarray:
        h, w = lum.shape
        return padded[1 + dy : 1 + dy + h, 1 + dx : 1 + dx + w]

    edge_x = (
        (at(-1, -1) - at(-1, 1)) * 0.25
        + (at(0, -1) - at(0, 1)) * 0.5
        + (at(1, -1) - at(1, 1)) * 0.25
    )
    edge_y = (
        (at(-1, -1) - at(1, -1)) * 0.25
        + (at(-1, 0) - at(1, 0)) * 0.5
        + (at(-1, 1) - at(1, 1)) * 0.25
    )

    nx = edge_x * strength
    ny = edge_y * strength
    length = np.sqrt(nx * nx + ny * ny + 1.0)

    normals = np.empty(lum.shape + (4,), dtype=np.float64)
    normals[..., 0] = nx / length * 0.5 + 0.5
    normals[..., 1] = ny / length * 0.5 + 0.5
    normals[..., 2] = 1.0 / length * 0.5 + 0.5
    normals[..., 3] = 1.0
    return normals


def to_rgb8(normals: np.ndarray) -> np.ndarray:
    """Quantise 0-1 normals to an (H, W, 3) ``uint8`` array (round half up)."""
    rgb = np.clip(normals[..., :3], 0.0, 1.0)
    return np.floor(rgb * 255.0 + 0.5).astype(np.uint8)


def normal_map_image(
    image: Image.Image,
    strength: float = 0.5,
    edge_mode: EdgeMode = "wrap",
) -> Image.Image:
    """Build an RGB normal map for a top-down PIL image."""
    source = image if image.mode in ("RGB", "RGBA", "L", "LA") else image.convert("RGB")
    pixels = np.flipud(np.asarray(source))
    normals = synthesize_normal_map(pixels, strength=strength, edge_mode=edge_mode)
    logger.debug(f"Synthesized {image.width}x{image.height} normal map (strength={strength}).")
    return Image.fromarray(np.ascontiguousarray(np.flipud(to_rgb8(normals))))


def normal_map_png(
    data: bytes,
    strength: float = 0.5,
    edge_mode: EdgeMode = "wrap",
) -> bytes:
    """Build a PNG-encoded normal map from encoded image bytes."""
    with Image.open(io.BytesIO(data)) as image:
        normal = normal_map_image(image, strength=strength, edge_mode=edge_mode)
    buffer = io.BytesIO()
    normal.save(buffer, format="PNG")
    return buffer.getvalue()


def _as_float(array: np.ndarray) -> np.ndarray:
    if np.issubdtype(array.dtype, np.integer):
        return array.astype(np.float64) / 255.0
    return array.astype(np.float64)
