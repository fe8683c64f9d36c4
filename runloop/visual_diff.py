"""Perceptual comparison of before/after screenshots."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

from PIL import Image

log = logging.getLogger("runloop.visual_diff")

HASH_SIZE = 8


@dataclass(frozen=True)
class VisualDiff:
    description: str
    identical: bool
    distance: int | None = None


def perceptual_hash(png: bytes) -> int | None:
    """64-bit average hash, or None when the image cannot be decoded."""
    try:
        img = Image.open(io.BytesIO(png)).convert("L").resize((HASH_SIZE, HASH_SIZE))
    except Exception as e:
        log.debug("perceptual_hash failed: %s", e)
        return None
    pixels = list(img.getdata())
    mean = sum(pixels) / len(pixels)
    bits = 0
    for p in pixels:
        bits = (bits << 1) | (1 if p >= mean else 0)
    return bits


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def compare(pre_png: bytes, post_png: bytes) -> VisualDiff:
    if pre_png == post_png:
        return VisualDiff("No visual change detected", True, 0)

    pre_hash = perceptual_hash(pre_png)
    post_hash = perceptual_hash(post_png)
    if pre_hash is None or post_hash is None:
        return VisualDiff("", False, None)

    distance = hamming_distance(pre_hash, post_hash)
    if distance == 0:
        return VisualDiff("No visual change detected", True, distance)
    if distance <= 5:
        return VisualDiff(f"Minor visual change (distance: {distance})", True, distance)
    if distance <= 15:
        return VisualDiff(f"Moderate visual change (distance: {distance})", False, distance)
    if distance <= 30:
        return VisualDiff(f"Significant visual change (distance: {distance})", False, distance)
    return VisualDiff(f"Major visual change (distance: {distance})", False, distance)


def screen_similarity(png_a: bytes, png_b: bytes) -> float:
    """Return [0..1] similarity where 1.0 means identical-looking."""
    if png_a == png_b:
        return 1.0
    try:
        from PIL import ImageChops

        img1 = Image.open(io.BytesIO(png_a)).convert("L").resize((64, 64))
        img2 = Image.open(io.BytesIO(png_b)).convert("L").resize((64, 64))
        diff = ImageChops.difference(img1, img2)
        mean = sum(diff.getdata()) / (64 * 64)
        sim = 1.0 - (float(mean) / 255.0)
        return max(0.0, min(1.0, sim))
    except Exception as e:
        log.debug("screen_similarity failed, falling back to 0.0: %s", e)
        return 0.0
