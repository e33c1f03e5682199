"""Pydantic models for the opaque design and builder payloads.

Records store these as UTF-8 JSON bytes. Decoding is strict: missing,
empty or malformed bytes raise ``PayloadDecodeError`` instead of yielding
a partially filled model.
"""

from __future__ import annotations

import random
from enum import Enum
from typing import TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import PayloadDecodeError

_HEX_DIGITS = set("0123456789abcdefABCDEF")

M = TypeVar("M", bound=BaseModel)


def _validate_hex_color(value: str) -> str:
    if len(value) != 7 or not value.startswith("#") or not set(value[1:]) <= _HEX_DIGITS:
        raise ValueError("Colors must be #RRGGBB hex strings")
    return value.upper()


def random_color() -> str:
    """Random opaque #RRGGBB color."""
    return "#{:06X}".format(random.randrange(0x1000000))


# ---------------------------------------------------------------------------
# Design
# ---------------------------------------------------------------------------


class PixelShape(str, Enum):
    """Shape used to draw data modules."""

    SQUARE = "square"
    CIRCLE = "circle"
    ROUNDED = "roundedPath"


class EyeShape(str, Enum):
    """Shape used to draw the three finder patterns."""

    SQUARE = "square"
    CIRCLE = "circle"
    LEAF = "leaf"


class DesignModel(BaseModel):
    """Visual appearance of a QR code."""

    background_color: str = "#FFFFFF"
    pixel_color: str = "#000000"
    eye_color: str = "#000000"
    eye_inner_color: str = "#000000"
    pixel_shape: PixelShape = PixelShape.SQUARE
    eye_shape: EyeShape = EyeShape.SQUARE
    error_correction: str = Field(default="M", pattern="^[LMQH]$")

    @field_validator("background_color", "pixel_color", "eye_color", "eye_inner_color")
    @classmethod
    def _validate_colors(cls, value: str) -> str:
        return _validate_hex_color(value)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class BuilderModel(BaseModel):
    """Content a QR code was built from.

    ``title`` names the builder used (``"Link"``, ``"WiFi"``, ...); it is
    what the search index shows as the kind of QR code.
    """

    title: str = "Link"
    responses: list[str] = Field(default_factory=list)
    result: str = ""


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


def _encode(model: BaseModel) -> bytes:
    return model.model_dump_json().encode("utf-8")


def _decode(model_cls: type[M], data: bytes | None) -> M:
    if not data:
        raise PayloadDecodeError(f"{model_cls.__name__} payload is empty")
    try:
        return model_cls.model_validate_json(data)
    except ValidationError as e:
        raise PayloadDecodeError(
            f"{model_cls.__name__} payload is invalid ({e.error_count()} errors)"
        ) from e
    except ValueError as e:
        raise PayloadDecodeError(f"{model_cls.__name__} payload is not JSON") from e


def encode_design(design: DesignModel) -> bytes:
    return _encode(design)


def decode_design(data: bytes | None) -> DesignModel:
    """Decode design bytes.

    Raises:
        PayloadDecodeError: If data is None, empty or not a valid design
    """
    return _decode(DesignModel, data)


def encode_builder(builder: BuilderModel) -> bytes:
    return _encode(builder)


def decode_builder(data: bytes | None) -> BuilderModel:
    """Decode builder-configuration bytes.

    Raises:
        PayloadDecodeError: If data is None, empty or not a valid builder
    """
    return _decode(BuilderModel, data)


__all__ = [
    "PixelShape",
    "EyeShape",
    "DesignModel",
    "BuilderModel",
    "random_color",
    "encode_design",
    "decode_design",
    "encode_builder",
    "decode_builder",
]
