import io

import pytest
from PIL import Image, UnidentifiedImageError

from imagehost.config import Settings
from imagehost.imaging import ImageProcessingOptions, process_image
from imagehost.publisher import AssetPublisher
from imagehost.storage import MemoryObjectStorage


def _png(width: int, height: int, mode: str = "RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), (200, 30, 30) if mode == "RGB" else (200, 30, 30, 128)).save(buffer, "PNG")
    return buffer.getvalue()


def _open(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


def test_large_images_are_scaled_to_fit() -> None:
    data, mime = process_image(_png(2400, 1600), "image/png", ImageProcessingOptions())

    assert mime == "image/png"
    with _open(data) as image:
        assert image.size == (1620, 1080)


def test_small_images_keep_their_size() -> None:
    data, _ = process_image(_png(64, 32), "image/png", ImageProcessingOptions())

    with _open(data) as image:
        assert image.size == (64, 32)


def test_output_format_conversion() -> None:
    options = ImageProcessingOptions(output_format="jpeg", quality=70)
    data, mime = process_image(_png(40, 40, mode="RGBA"), "image/png", options)

    assert mime == "image/jpeg"
    with _open(data) as image:
        assert image.format == "JPEG"
        assert image.mode == "RGB"


def test_watermark_changes_pixels() -> None:
    source = _png(200, 100)
    plain, _ = process_image(source, "image/png", ImageProcessingOptions())
    marked, _ = process_image(source, "image/png", ImageProcessingOptions(watermark_text="imagehost"))

    with _open(plain) as a, _open(marked) as b:
        assert a.size == b.size
        assert a.convert("RGBA").tobytes() != b.convert("RGBA").tobytes()


def test_disabled_processing_passes_through() -> None:
    source = _png(2400, 1600)
    data, mime = process_image(source, "image/png", ImageProcessingOptions(enabled=False))

    assert data is source
    assert mime == "image/png"


def test_animated_gif_passes_through() -> None:
    frames = [Image.new("RGB", (20, 20), color) for color in ((255, 0, 0), (0, 0, 255))]
    buffer = io.BytesIO()
    frames[0].save(buffer, "GIF", save_all=True, append_images=frames[1:], duration=100, loop=0)
    source = buffer.getvalue()

    data, mime = process_image(source, "image/gif", ImageProcessingOptions(output_format="webp"))
    assert data is source
    assert mime == "image/gif"


def test_undecodable_input_raises() -> None:
    with pytest.raises(UnidentifiedImageError):
        process_image(b"definitely not a png", "image/png", ImageProcessingOptions())


def test_options_from_settings() -> None:
    config = Settings(image_max_width=800, image_max_height=600, image_output_format="WEBP", image_watermark_text="")
    options = ImageProcessingOptions.from_settings(config)

    assert options.max_width == 800
    assert options.output_format == "webp"
    assert options.watermark_text is None
    assert options.target_mime_type("image/png") == "image/webp"


def test_publisher_falls_back_to_original_bytes() -> None:
    storage = MemoryObjectStorage()
    publisher = AssetPublisher(storage, ImageProcessingOptions())

    published = publisher.publish(b"not an image", "image/png", suggested_key="abc123")
    assert published.key == "uploads/abc123.png"
    assert published.mime_type == "image/png"
    assert storage.get_object(published.key) == b"not an image"


def test_publisher_uses_the_processed_extension() -> None:
    storage = MemoryObjectStorage()
    publisher = AssetPublisher(storage, ImageProcessingOptions(output_format="webp"))

    published = publisher.publish(_png(30, 30), "image/png", suggested_key="xyz789")
    assert published.key == "uploads/xyz789.webp"
    assert published.mime_type == "image/webp"
    assert published.size == len(storage.get_object(published.key))
