"""
Red-ink separation: split teacher corrections (red / pink pen) from student
handwriting (black / blue pen) with a per-pixel colour rule.

Each pixel lands in exactly one layer; in the other layer it is painted white.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageFilter, ImageOps

logger = logging.getLogger(__name__)

LAYER_JPEG_QUALITY = 90
ENHANCE_MAX_SIDE = 2400
ENHANCE_JPEG_QUALITY = 95


@dataclass(frozen=True)
class RedInkSeparation:
    red_channel: bytes  # JPEG: teacher ink on white
    blue_black_channel: bytes  # JPEG: everything else on white
    original: bytes
    red_ratio: float  # share of pixels classified as teacher ink


def classify_red_pixels(rgb: np.ndarray) -> np.ndarray:
    """
    Boolean mask (H x W) of teacher-ink pixels for an H x W x 3 (or x 4) uint8 array.

    red:      R > 130, G < 120, B < 120, R - max(G, B) > 40, R / max(G, B, 1) > 1.3
    pinkish:  R > 180, G < 150, B < 150, R - max(G, B) > 30  (faded marker)
    """
    r = rgb[..., 0].astype(np.int16)
    g = rgb[..., 1].astype(np.int16)
    b = rgb[..., 2].astype(np.int16)
    max_gb = np.maximum(g, b)
    redness = r - max_gb
    ratio = r / np.maximum(max_gb, 1)

    is_red = (r > 130) & (g < 120) & (b < 120) & (redness > 40) & (ratio > 1.3)
    is_pinkish = (r > 180) & (g < 150) & (b < 150) & (redness > 30)
    return is_red | is_pinkish


def load_pixels(image_bytes: bytes) -> np.ndarray:
    """Decode to an RGB or RGBA uint8 array, keeping alpha when the source has any."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        has_alpha = img.mode in ("RGBA", "LA", "PA") or "transparency" in img.info
        return np.asarray(img.convert("RGBA" if has_alpha else "RGB"), dtype=np.uint8).copy()


def encode_jpeg(pixels: np.ndarray, *, quality: int, subsampling: int | None = None) -> bytes:
    if pixels.shape[-1] == 4:
        rgba = Image.fromarray(pixels, "RGBA")
        img = Image.new("RGB", rgba.size, (255, 255, 255))
        img.paste(rgba, mask=rgba.getchannel("A"))
    else:
        img = Image.fromarray(pixels, "RGB")
    buf = io.BytesIO()
    kwargs: dict[str, object] = {"quality": quality}
    if subsampling is not None:
        kwargs["subsampling"] = subsampling
    img.save(buf, format="JPEG", **kwargs)
    return buf.getvalue()


def _paint_white(pixels: np.ndarray, where: np.ndarray) -> None:
    pixels[where, :3] = 255
    if pixels.shape[-1] == 4:
        pixels[where, 3] = 255


def split_layers(pixels: np.ndarray, mask: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """(teacher ink, everything else) as pixel arrays the size of `pixels`; copied pixels keep their alpha."""
    red_layer = pixels.copy()
    _paint_white(red_layer, ~mask)
    blue_black_layer = pixels.copy()
    _paint_white(blue_black_layer, mask)
    return red_layer, blue_black_layer


def red_ink_ratio(image_bytes: bytes) -> float:
    mask = classify_red_pixels(load_pixels(image_bytes))
    return float(mask.mean()) if mask.size else 0.0


def separate_red_ink(image_bytes: bytes) -> RedInkSeparation:
    pixels = load_pixels(image_bytes)
    mask = classify_red_pixels(pixels)
    red_layer, blue_black_layer = split_layers(pixels, mask)

    red_ratio = float(mask.mean()) if mask.size else 0.0
    logger.info(
        "Red ink separation: %dx%d, %.2f%% teacher ink",
        pixels.shape[1],
        pixels.shape[0],
        red_ratio * 100,
    )
    return RedInkSeparation(
        red_channel=encode_jpeg(red_layer, quality=LAYER_JPEG_QUALITY),
        blue_black_channel=encode_jpeg(blue_black_layer, quality=LAYER_JPEG_QUALITY),
        original=image_bytes,
        red_ratio=red_ratio,
    )


def enhance_image(image_bytes: bytes) -> bytes:
    """Fit inside 2400x2400 (never enlarge), stretch contrast, sharpen lightly."""
    with Image.open(io.BytesIO(image_bytes)) as src:
        img = src.convert("RGB")
    before = img.size
    img.thumbnail((ENHANCE_MAX_SIDE, ENHANCE_MAX_SIDE), Image.Resampling.LANCZOS)
    if img.size != before:
        logger.info("Resizing image: %dx%d -> %dx%d", before[0], before[1], img.size[0], img.size[1])
    img = ImageOps.autocontrast(img, cutoff=1)
    img = img.filter(ImageFilter.UnsharpMask(radius=1.0, percent=100, threshold=2))
    return encode_jpeg(np.asarray(img), quality=ENHANCE_JPEG_QUALITY, subsampling=0)
