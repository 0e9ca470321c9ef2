"""
Enhancement pipeline for phone photos of tests before OCR / vision analysis.

Steps run in a fixed order (rotate, resize, grayscale, contrast, denoise, sharpen,
binarize) and each applied step is recorded by name so the analysis metadata shows
what happened to the image. Any decoding or processing failure falls back to the
untouched original rather than failing the upload.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field, replace

import numpy as np
from PIL import Image, ImageFilter, ImageOps

logger = logging.getLogger(__name__)

_EXIF_ORIENTATION_TAG = 0x0112
_ORIENTATION_DEGREES = {3: 180, 4: 180, 5: 90, 6: 90, 7: 270, 8: 270}

_IMAGE_ERRORS = (OSError, ValueError, Image.DecompressionBombError)


@dataclass(frozen=True)
class PreprocessingOptions:
    auto_rotate: bool = True
    resize: bool = True
    grayscale: bool = True
    contrast_enhancement: bool = True
    noise_reduction: bool = True
    sharpening: bool = True
    binarization: bool = False
    target_min_width: int = 1500
    target_max_width: int = 3000
    jpeg_quality: int = 95


DEFAULT_OPTIONS = PreprocessingOptions()


@dataclass
class PreprocessingResult:
    processed: bytes
    original_size: tuple[int, int]
    processed_size: tuple[int, int]
    rotation_applied: int = 0
    processing_time_ms: int = 0
    steps_applied: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ColorSeparationResult:
    student_writing: bytes
    teacher_marks: bytes
    combined: bytes
    has_red_marks: bool
    red_percentage: float


@dataclass(frozen=True)
class ImageQuality:
    needs_preprocessing: bool
    brightness: float
    contrast: float
    is_blurry: bool
    recommended_mode: str  # quick | standard | handwritten


def _linear(img: Image.Image, a: float, b: float) -> Image.Image:
    table = [max(0, min(255, round(i * a + b))) for i in range(256)]
    return img.point(table * len(img.getbands()))


def _png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _target_size(size: tuple[int, int], options: PreprocessingOptions) -> tuple[int, int] | None:
    width, height = size
    if width < options.target_min_width:
        new_width = options.target_min_width
    elif width > options.target_max_width:
        new_width = options.target_max_width
    else:
        return None
    return new_width, max(1, round(height * new_width / width))


def preprocess_image(image_bytes: bytes, options: PreprocessingOptions | None = None) -> PreprocessingResult:
    opts = options or DEFAULT_OPTIONS
    started = time.perf_counter()
    steps: list[str] = []
    original_size = (0, 0)
    rotation = 0

    try:
        with Image.open(io.BytesIO(image_bytes)) as src:
            original_size = src.size
            if opts.auto_rotate:
                rotation = _ORIENTATION_DEGREES.get(src.getexif().get(_EXIF_ORIENTATION_TAG, 1), 0)
                img = ImageOps.exif_transpose(src)
                steps.append("auto-rotate")
            else:
                img = src.copy()

        img = img.convert("L" if opts.grayscale else "RGB")

        if opts.resize:
            target = _target_size(img.size, opts)
            if target:
                img = img.resize(target, Image.Resampling.LANCZOS)
                steps.append(f"resize-{target[0]}x{target[1]}")

        if opts.grayscale:
            steps.append("grayscale")

        if opts.contrast_enhancement:
            img = _linear(ImageOps.autocontrast(img, cutoff=1), 1.15, -15)
            steps.append("contrast-enhance")

        if opts.noise_reduction:
            img = img.filter(ImageFilter.MedianFilter(size=3))
            steps.append("noise-reduction")

        if opts.sharpening:
            img = img.filter(ImageFilter.UnsharpMask(radius=1.2, percent=120, threshold=2))
            steps.append("sharpen")

        if opts.binarization:
            img = img.convert("L").point(lambda v: 255 if v >= 128 else 0)
            steps.append("binarize")

        processed = _png(img)
        elapsed = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Preprocessed image %dx%d -> %dx%d in %dms (%s)",
            original_size[0],
            original_size[1],
            img.size[0],
            img.size[1],
            elapsed,
            ", ".join(steps),
        )
        return PreprocessingResult(
            processed=processed,
            original_size=original_size,
            processed_size=img.size,
            rotation_applied=rotation,
            processing_time_ms=elapsed,
            steps_applied=steps,
        )
    except _IMAGE_ERRORS as e:
        logger.warning("Preprocessing failed, using original image: %s", e)
        return PreprocessingResult(
            processed=image_bytes,
            original_size=original_size,
            processed_size=original_size,
            rotation_applied=0,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            steps_applied=["fallback-original"],
        )


def preprocess_handwritten(image_bytes: bytes) -> PreprocessingResult:
    """Handwriting needs more pixels to keep thin pen strokes legible."""
    return preprocess_image(
        image_bytes,
        replace(DEFAULT_OPTIONS, binarization=False, target_min_width=1800, target_max_width=3500),
    )


def preprocess_printed(image_bytes: bytes) -> PreprocessingResult:
    return preprocess_image(
        image_bytes,
        replace(
            DEFAULT_OPTIONS,
            noise_reduction=False,
            binarization=True,
            target_min_width=1200,
            target_max_width=2500,
        ),
    )


def preprocess_quick(image_bytes: bytes) -> PreprocessingResult:
    return preprocess_image(
        image_bytes,
        PreprocessingOptions(
            auto_rotate=True,
            resize=True,
            grayscale=True,
            contrast_enhancement=False,
            noise_reduction=False,
            sharpening=False,
            binarization=False,
            target_min_width=1200,
            target_max_width=2500,
        ),
    )


def preprocess_for_mode(image_bytes: bytes, mode: str) -> PreprocessingResult:
    if mode == "quick":
        return preprocess_quick(image_bytes)
    if mode == "handwritten":
        return preprocess_handwritten(image_bytes)
    if mode == "printed":
        return preprocess_printed(image_bytes)
    return preprocess_image(image_bytes)


def separate_colors(image_bytes: bytes) -> ColorSeparationResult:
    """
    Layers for downstream OCR: a teacher-mark mask, a cleaned-up student layer and
    a combined high-contrast version. Red share above 0.5% counts as "has red marks".
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as src:
            rgb_img = src.convert("RGB")
        rgb = np.asarray(rgb_img, dtype=np.float32)
        r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]

        red_pixels = (r > 150) & (r > g * 1.5) & (r > b * 1.5)
        red_percentage = float(red_pixels.mean() * 100) if red_pixels.size else 0.0

        marks = (r > 120) & (r > g * 1.3) & (r > b * 1.3)
        mask = np.where(marks, 0, 255).astype(np.uint8)
        teacher_marks = _png(Image.fromarray(mask, "L"))

        gray = ImageOps.autocontrast(rgb_img.convert("L"), cutoff=1)
        student_writing = _png(gray.filter(ImageFilter.UnsharpMask(radius=1.0, percent=100, threshold=2)))
        combined = _png(_linear(gray, 1.2, -10).filter(ImageFilter.UnsharpMask(radius=1.2, percent=120, threshold=2)))

        logger.info("Color separation: %.2f%% red pixels", red_percentage)
        return ColorSeparationResult(
            student_writing=student_writing,
            teacher_marks=teacher_marks,
            combined=combined,
            has_red_marks=red_percentage > 0.5,
            red_percentage=red_percentage,
        )
    except _IMAGE_ERRORS as e:
        logger.warning("Color separation failed, using grayscale for all layers: %s", e)
        with Image.open(io.BytesIO(image_bytes)) as src:
            fallback = _png(ImageOps.autocontrast(src.convert("L"), cutoff=1))
        return ColorSeparationResult(
            student_writing=fallback,
            teacher_marks=fallback,
            combined=fallback,
            has_red_marks=False,
            red_percentage=0.0,
        )


def analyze_image_quality(image_bytes: bytes) -> ImageQuality:
    """
    Cheap global statistics used to pick a preprocessing preset.

    brightness: mean of the channel means (0-255)
    contrast:   average channel standard deviation scaled to 0-100
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as src:
            rgb = np.asarray(src.convert("RGB"), dtype=np.float32)
        channels = rgb.reshape(-1, 3)
        brightness = float(channels.mean(axis=0).mean())
        avg_std = float(channels.std(axis=0).mean())
        contrast = min(100.0, avg_std / 128 * 100)
    except _IMAGE_ERRORS as e:
        logger.warning("Image quality analysis failed: %s", e)
        return ImageQuality(True, 128.0, 50.0, False, "standard")

    too_light = brightness > 200
    too_dark = brightness < 50
    low_contrast = contrast < 30
    is_blurry = contrast < 20

    needs = too_light or too_dark or low_contrast or is_blurry
    if not needs:
        mode = "quick"
    elif low_contrast or is_blurry:
        mode = "handwritten"
    else:
        mode = "standard"
    return ImageQuality(
        needs_preprocessing=needs,
        brightness=round(brightness, 1),
        contrast=round(contrast, 1),
        is_blurry=is_blurry,
        recommended_mode=mode,
    )
