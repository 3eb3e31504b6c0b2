"""
config.py - Save options, image rewrite settings and quality presets.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import InvalidArgumentError

# Images within this many DPI of the target are left alone
DEFAULT_DPI_HEADROOM = 50


class CompressionQuality(Enum):
    """Compression presets: (JPEG quality, target DPI)."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def jpeg_quality(self) -> int:
        return {"low": 30, "medium": 50, "high": 70}[self.value]

    @property
    def target_dpi(self) -> int:
        return {"low": 72, "medium": 100, "high": 150}[self.value]

    @property
    def description(self) -> str:
        return f"JPEG {self.jpeg_quality}%, {self.target_dpi} DPI"


@dataclass
class ImageRewriteConfig:
    """
    Image rewrite policy.

    convert_lossless: lossless sources (Flate, palette images) that qualify for
    rewriting are re-encoded as JPEG. This is a lossy conversion; switch it off
    to keep them lossless (downsampled and Flate-encoded).
    """
    jpeg_quality: int = 50
    target_dpi: float = 100
    dpi_headroom: float = DEFAULT_DPI_HEADROOM
    downsample: bool = True
    recompress: bool = True
    convert_lossless: bool = True
    detect_grayscale: bool = True

    @property
    def dpi_threshold(self) -> float:
        return self.target_dpi + self.dpi_headroom

    def validate(self) -> "ImageRewriteConfig":
        if not 1 <= int(self.jpeg_quality) <= 100:
            raise InvalidArgumentError(f"jpeg_quality must be 1-100, got {self.jpeg_quality}")
        if self.target_dpi <= 0:
            raise InvalidArgumentError(f"target_dpi must be positive, got {self.target_dpi}")
        if self.dpi_headroom < 0:
            raise InvalidArgumentError(f"dpi_headroom must be non-negative, got {self.dpi_headroom}")
        return self

    @classmethod
    def from_quality(cls, quality: CompressionQuality) -> "ImageRewriteConfig":
        return cls(jpeg_quality=quality.jpeg_quality, target_dpi=quality.target_dpi)


@dataclass
class SaveOptions:
    """
    Options for the save pipeline.

    garbage_level:
        0  write every object as it is
        1  drop objects unreachable from the catalog
        2  also merge duplicate objects
        3  also renumber objects densely
        4  also write a cross-reference stream with object streams
    """
    garbage_level: int = 0
    compress_streams: bool = True
    compress_images: bool = False
    compress_fonts: bool = True
    clean_content_streams: bool = False
    sanitize: bool = False
    linearize: bool = False
    regenerate_appearances: bool = False
    images: ImageRewriteConfig = field(default_factory=ImageRewriteConfig)

    def validate(self) -> "SaveOptions":
        if not isinstance(self.garbage_level, int) or not 0 <= self.garbage_level <= 4:
            raise InvalidArgumentError(f"garbage_level must be 0-4, got {self.garbage_level!r}")
        self.images.validate()
        return self

    @classmethod
    def for_quality(cls, quality: CompressionQuality) -> "SaveOptions":
        return cls(
            garbage_level=4,
            compress_streams=True,
            compress_images=True,
            compress_fonts=True,
            clean_content_streams=True,
            sanitize=True,
            images=ImageRewriteConfig.from_quality(quality),
        )


@dataclass
class CompressionSettings:
    """Settings for compress_pdf / compress_batch."""
    quality: CompressionQuality = CompressionQuality.MEDIUM
    options: Optional[SaveOptions] = None
    max_workers: int = 0

    def to_save_options(self) -> SaveOptions:
        options = self.options or SaveOptions.for_quality(self.quality)
        return options.validate()

    @property
    def display_name(self) -> str:
        return "Custom" if self.options is not None else self.quality.value.capitalize()
