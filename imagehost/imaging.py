"""Resize, re-encode and watermark images before they are published."""

import io
from typing import Literal

from PIL import Image, ImageDraw, ImageFont, ImageOps
from pydantic import BaseModel, ConfigDict, Field

from imagehost.config import Settings

MIME_TO_PIL_FORMAT = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/gif": "GIF",
    "image/webp": "WEBP",
}
OUTPUT_FORMAT_TO_MIME = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}
MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


class ImageProcessingOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    max_width: int = Field(default=1920, gt=0)
    max_height: int = Field(default=1080, gt=0)
    quality: int = Field(default=80, ge=1, le=100)
    output_format: Literal["jpeg", "png", "webp"] | None = None
    progressive: bool = True
    watermark_text: str | None = None
    watermark_opacity: int = Field(default=128, ge=0, le=255)
    watermark_margin: int = Field(default=12, ge=0)

    @classmethod
    def from_settings(cls, config: Settings) -> "ImageProcessingOptions":
        return cls(
            enabled=config.image_processing_enabled,
            max_width=config.image_max_width,
            max_height=config.image_max_height,
            quality=config.image_quality,
            output_format=config.image_output_format.lower() or None,
            watermark_text=config.image_watermark_text or None,
        )

    def target_mime_type(self, source_mime_type: str) -> str:
        if self.output_format:
            return OUTPUT_FORMAT_TO_MIME[self.output_format]
        return source_mime_type


def _apply_watermark(image: Image.Image, options: ImageProcessingOptions) -> Image.Image:
    base = image.convert("RGBA")
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    font = ImageFont.load_default()
    left, top, right, bottom = draw.textbbox((0, 0), options.watermark_text, font=font)
    x = max(0, base.width - (right - left) - options.watermark_margin)
    y = max(0, base.height - (bottom - top) - options.watermark_margin)
    draw.text((x, y), options.watermark_text, font=font, fill=(255, 255, 255, options.watermark_opacity))
    return Image.alpha_composite(base, overlay)


def _save_kwargs(pil_format: str, options: ImageProcessingOptions) -> dict:
    if pil_format == "JPEG":
        return {"quality": options.quality, "progressive": options.progressive, "optimize": True}
    if pil_format == "WEBP":
        return {"quality": options.quality, "method": 6}
    if pil_format == "PNG":
        return {"optimize": True, "compress_level": 9}
    return {}


def process_image(data: bytes, mime_type: str, options: ImageProcessingOptions) -> tuple[bytes, str]:
    """Return the processed bytes and their mime type.

    Animated GIFs and disabled processing pass through untouched. Undecodable input
    raises ``PIL.UnidentifiedImageError`` (an ``OSError``).
    """
    if not options.enabled or mime_type not in MIME_TO_PIL_FORMAT:
        return data, mime_type

    with Image.open(io.BytesIO(data)) as source:
        if getattr(source, "is_animated", False):
            return data, mime_type
        image = ImageOps.exif_transpose(source)
        image.thumbnail((options.max_width, options.max_height), Image.Resampling.LANCZOS)

    target_mime = options.target_mime_type(mime_type)
    pil_format = MIME_TO_PIL_FORMAT[target_mime]
    if options.watermark_text:
        image = _apply_watermark(image, options)
    if pil_format == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    if pil_format == "GIF" and image.mode == "RGBA":
        image = image.convert("P")

    output = io.BytesIO()
    image.save(output, format=pil_format, **_save_kwargs(pil_format, options))
    return output.getvalue(), target_mime
