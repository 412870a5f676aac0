"""
Compact perceptual placeholder codec.

Encodes a small RGB grid as a BlurHash-compatible string: a DCT-style set of
cosine components in linear light, quantised and written in base83. With a
fixed component count the string length is fixed (``4 + 2 * cx * cy``), and
the DC term is the exact mean colour of the image, so a decoded placeholder
never drifts in average colour from the final picture.
"""

import math
from typing import Tuple

import numpy as np
from PIL import Image

from .image_utils import bounded_dimensions

BASE83_ALPHABET = (
    "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz#$%*+,-.:;=?@[]^_{|}~"
)
_BASE83_INDEX = {char: index for index, char in enumerate(BASE83_ALPHABET)}


class PlaceholderError(ValueError):
    """Raised for malformed placeholder strings or parameters."""


def placeholder_length(components_x: int, components_y: int) -> int:
    return 4 + 2 * components_x * components_y


def _encode83(value: int, length: int) -> str:
    chars = []
    for i in range(1, length + 1):
        digit = (value // (83 ** (length - i))) % 83
        chars.append(BASE83_ALPHABET[digit])
    return "".join(chars)


def _decode83(text: str) -> int:
    value = 0
    for char in text:
        try:
            value = value * 83 + _BASE83_INDEX[char]
        except KeyError:
            raise PlaceholderError(f"Invalid placeholder character: {char!r}") from None
    return value


def srgb_to_linear(values: np.ndarray) -> np.ndarray:
    v = np.asarray(values, dtype=np.float64) / 255.0
    return np.where(v <= 0.04045, v / 12.92, ((v + 0.055) / 1.055) ** 2.4)


def linear_to_srgb(values: np.ndarray) -> np.ndarray:
    v = np.clip(np.asarray(values, dtype=np.float64), 0.0, 1.0)
    srgb = np.where(v <= 0.0031308, v * 12.92, 1.055 * np.power(v, 1 / 2.4) - 0.055)
    return np.floor(srgb * 255 + 0.5).astype(np.int64)


def _sign_pow(value: float, exponent: float) -> float:
    return math.copysign(abs(value) ** exponent, value)


def _cosine_bases(components: int, size: int) -> np.ndarray:
    """(components, size) matrix of cos(pi * k * p / size)."""
    k = np.arange(components, dtype=np.float64)[:, None]
    p = np.arange(size, dtype=np.float64)[None, :]
    return np.cos(np.pi * k * p / size)


def encode_pixels(pixels: np.ndarray, components_x: int = 4, components_y: int = 3) -> str:
    """
    Encode an (H, W, 3) uint8 RGB array.

    Args:
        pixels: RGB pixel grid, typically a few dozen pixels per side
        components_x: Horizontal cosine components (1-9)
        components_y: Vertical cosine components (1-9)

    Returns:
        Placeholder string of ``placeholder_length(components_x, components_y)`` chars
    """
    if not (1 <= components_x <= 9 and 1 <= components_y <= 9):
        raise PlaceholderError("Component counts must be between 1 and 9")
    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise PlaceholderError(f"Expected an (H, W, 3) array, got shape {pixels.shape}")

    height, width = pixels.shape[:2]
    linear = srgb_to_linear(pixels)

    basis_y = _cosine_bases(components_y, height)
    basis_x = _cosine_bases(components_x, width)
    # factors[j, i, c] = sum_y sum_x by[j, y] * bx[i, x] * linear[y, x, c]
    factors = np.einsum("jy,ix,yxc->jic", basis_y, basis_x, linear) / (width * height)
    normalisation = np.full((components_y, components_x, 1), 2.0)
    normalisation[0, 0, 0] = 1.0
    factors = (factors * normalisation).reshape(-1, 3)

    dc = factors[0]
    ac = factors[1:]

    parts = [_encode83((components_x - 1) + (components_y - 1) * 9, 1)]

    if len(ac):
        actual_max = float(np.max(np.abs(ac)))
        quantised_max = int(max(0, min(82, math.floor(actual_max * 166 - 0.5))))
        max_value = (quantised_max + 1) / 166
        parts.append(_encode83(quantised_max, 1))
    else:
        max_value = 1.0
        parts.append(_encode83(0, 1))

    r, g, b = (int(c) for c in linear_to_srgb(dc))
    parts.append(_encode83((r << 16) + (g << 8) + b, 4))

    for component in ac:
        quantised = [
            int(max(0, min(18, math.floor(_sign_pow(value / max_value, 0.5) * 9 + 9.5))))
            for value in component
        ]
        parts.append(_encode83(quantised[0] * 19 * 19 + quantised[1] * 19 + quantised[2], 2))

    return "".join(parts)


def encode_image(
    img: "Image.Image",
    grid: int = 32,
    components_x: int = 4,
    components_y: int = 3,
) -> str:
    """
    Downsample an RGB image to at most ``grid`` pixels per side and encode it.

    The downsample keeps the aspect ratio; a box filter is used so every
    source pixel contributes to the average colour.
    """
    size = bounded_dimensions(img.width, img.height, grid)
    small = img.convert("RGB").resize(size, Image.Resampling.BOX)
    return encode_pixels(np.asarray(small, dtype=np.uint8), components_x, components_y)


def decode_components(placeholder: str) -> Tuple[int, int, np.ndarray]:
    """
    Parse a placeholder string into its cosine components.

    Returns:
        (components_x, components_y, colors) where colors is (cx * cy, 3) linear RGB

    Raises:
        PlaceholderError: If the string is malformed
    """
    if len(placeholder) < 6:
        raise PlaceholderError("Placeholder must be at least 6 characters")

    size_flag = _decode83(placeholder[0])
    components_y = size_flag // 9 + 1
    components_x = size_flag % 9 + 1
    expected = placeholder_length(components_x, components_y)
    if len(placeholder) != expected:
        raise PlaceholderError(
            f"Placeholder length {len(placeholder)} does not match {expected} "
            f"for {components_x}x{components_y} components"
        )

    max_value = (_decode83(placeholder[1]) + 1) / 166

    colors = np.zeros((components_x * components_y, 3), dtype=np.float64)
    dc_value = _decode83(placeholder[2:6])
    colors[0] = srgb_to_linear(np.array([dc_value >> 16, (dc_value >> 8) & 255, dc_value & 255]))

    for index in range(1, components_x * components_y):
        value = _decode83(placeholder[4 + index * 2 : 6 + index * 2])
        quantised = (value // (19 * 19), (value // 19) % 19, value % 19)
        colors[index] = [_sign_pow((q - 9) / 9, 2.0) * max_value for q in quantised]

    return components_x, components_y, colors


def decode_placeholder(placeholder: str, width: int, height: int, punch: float = 1.0) -> np.ndarray:
    """
    Render a placeholder back into a blurred (height, width, 3) uint8 preview.

    Args:
        placeholder: String produced by ``encode_pixels``/``encode_image``
        width: Output width in pixels
        height: Output height in pixels
        punch: Contrast multiplier for the AC components

    Returns:
        RGB pixel array
    """
    if width <= 0 or height <= 0:
        raise PlaceholderError("Output dimensions must be positive")

    components_x, components_y, colors = decode_components(placeholder)
    colors = colors.copy()
    colors[1:] *= punch

    basis_y = _cosine_bases(components_y, height)
    basis_x = _cosine_bases(components_x, width)
    grid = colors.reshape(components_y, components_x, 3)
    linear = np.einsum("jy,ix,jic->yxc", basis_y, basis_x, grid)
    return linear_to_srgb(linear).astype(np.uint8)


def decode_to_image(placeholder: str, width: int, height: int, punch: float = 1.0) -> "Image.Image":
    return Image.fromarray(decode_placeholder(placeholder, width, height, punch))
