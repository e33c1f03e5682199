"""Thumbnail rendering for search index entries.

Draws a square preview of a design: the background, three finder
patterns in the eye colors and a module grid in the pixel color, using
the design's shapes. The module layout is derived from the record
identifier so a record always renders the same preview.
"""

from __future__ import annotations

import hashlib
import io

from PIL import Image, ImageDraw

from ..errors import PayloadDecodeError, ThumbnailError
from ..payloads import DesignModel, EyeShape, PixelShape, decode_design

GRID_MODULES = 21
_EYE_MODULES = 7


def _in_eye(x: int, y: int) -> bool:
    far = GRID_MODULES - _EYE_MODULES
    if y < _EYE_MODULES:
        return x < _EYE_MODULES or x >= far
    return x < _EYE_MODULES and y >= far


def _module_bits(seed: str) -> list[bool]:
    """Deterministic on/off pattern for the data modules."""
    count = GRID_MODULES * GRID_MODULES
    bits: list[bool] = []
    counter = 0
    while len(bits) < count:
        digest = hashlib.sha256(f"{seed}:{counter}".encode()).digest()
        for byte in digest:
            for shift in range(8):
                bits.append(bool(byte >> shift & 1))
        counter += 1
    return bits[:count]


def _draw_eye(draw: ImageDraw.ImageDraw, x0: float, y0: float, module: float, design: DesignModel) -> None:
    outer = (x0, y0, x0 + 7 * module, y0 + 7 * module)
    gap = (x0 + module, y0 + module, x0 + 6 * module, y0 + 6 * module)
    inner = (x0 + 2 * module, y0 + 2 * module, x0 + 5 * module, y0 + 5 * module)

    if design.eye_shape is EyeShape.CIRCLE:
        draw.ellipse(outer, fill=design.eye_color)
        draw.ellipse(gap, fill=design.background_color)
        draw.ellipse(inner, fill=design.eye_inner_color)
    elif design.eye_shape is EyeShape.LEAF:
        radius = 2 * module
        draw.rounded_rectangle(outer, radius=radius, fill=design.eye_color)
        draw.rounded_rectangle(gap, radius=radius * 0.7, fill=design.background_color)
        draw.rounded_rectangle(inner, radius=radius * 0.5, fill=design.eye_inner_color)
    else:
        draw.rectangle(outer, fill=design.eye_color)
        draw.rectangle(gap, fill=design.background_color)
        draw.rectangle(inner, fill=design.eye_inner_color)


def render_design(design: DesignModel, size: int, seed: str = "") -> Image.Image:
    """Render a design preview as an RGB image of size x size pixels."""
    if size < GRID_MODULES:
        raise ThumbnailError(f"size {size} is smaller than {GRID_MODULES} pixels")

    image = Image.new("RGB", (size, size), design.background_color)
    draw = ImageDraw.Draw(image)
    module = size / (GRID_MODULES + 2)  # one module of quiet zone each side
    origin = module

    for index, on in enumerate(_module_bits(seed)):
        x, y = index % GRID_MODULES, index // GRID_MODULES
        if not on or _in_eye(x, y):
            continue
        box = (
            origin + x * module,
            origin + y * module,
            origin + (x + 1) * module,
            origin + (y + 1) * module,
        )
        if design.pixel_shape is PixelShape.CIRCLE:
            draw.ellipse(box, fill=design.pixel_color)
        elif design.pixel_shape is PixelShape.ROUNDED:
            draw.rounded_rectangle(box, radius=module / 3, fill=design.pixel_color)
        else:
            draw.rectangle(box, fill=design.pixel_color)

    far = origin + (GRID_MODULES - _EYE_MODULES) * module
    for x0, y0 in ((origin, origin), (far, origin), (origin, far)):
        _draw_eye(draw, x0, y0, module, design)

    return image


def jpeg_thumbnail(design_data: bytes | None, size: int, seed: str = "") -> bytes:
    """Render serialized design bytes to a JPEG thumbnail.

    Raises:
        ThumbnailError: If the design cannot be decoded or rendered
    """
    try:
        design = decode_design(design_data)
    except PayloadDecodeError as e:
        raise ThumbnailError("design payload could not be decoded") from e

    image = render_design(design, size, seed)
    buffer = io.BytesIO()
    try:
        image.save(buffer, format="JPEG", quality=85)
    except OSError as e:
        raise ThumbnailError("JPEG encoding failed") from e
    return buffer.getvalue()


__all__ = ["GRID_MODULES", "render_design", "jpeg_thumbnail"]
