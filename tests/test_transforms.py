"""
Tests for the Pillow transforms.
"""

import pytest
from PIL import Image

from image_pipeline_backend.errors import PermanentTransformError
from image_pipeline_backend.transforms import encoder_options, resize_image, tiled_overlay, watermark_image


@pytest.fixture
def png_file(tmp_path, sample_png):
    path = tmp_path / "input.png"
    path.write_bytes(sample_png)
    return path


class TestResize:
    def test_scales_to_width(self, png_file, tmp_path):
        destination = tmp_path / "out.png"

        resize_image(20)(png_file, destination)

        with Image.open(destination) as image:
            assert image.size == (20, 10)

    def test_jpeg_output_from_rgba(self, tmp_path):
        """Transparent inputs are flattened for JPEG outputs."""
        source = tmp_path / "alpha.png"
        Image.new("RGBA", (30, 30), (0, 0, 0, 0)).save(source)
        destination = tmp_path / "out.jpg"

        resize_image(10)(source, destination)

        with Image.open(destination) as image:
            assert image.format == "JPEG"
            assert image.size == (10, 10)

    def test_missing_input_is_permanent(self, tmp_path):
        with pytest.raises(PermanentTransformError):
            resize_image(20)(tmp_path / "nope.png", tmp_path / "out.png")

    def test_unreadable_input_is_permanent(self, tmp_path):
        source = tmp_path / "fake.png"
        source.write_text("definitely not an image")

        with pytest.raises(PermanentTransformError):
            resize_image(20)(source, tmp_path / "out.png")

    def test_no_partial_file_left_behind(self, png_file, tmp_path):
        resize_image(20)(png_file, tmp_path / "out.png")

        assert not list(tmp_path.glob(".*.partial"))


class TestWatermark:
    def test_overlay_is_drawn(self, settings, tmp_path):
        """A black image gains light pixels and keeps its size and codec."""
        source = tmp_path / "black.png"
        Image.new("RGB", (400, 300), (0, 0, 0)).save(source)
        destination = tmp_path / "marked.png"

        watermark_image(settings.watermark)(source, destination)

        with Image.open(destination) as image:
            assert image.size == (400, 300)
            assert image.format == "PNG"
            assert max(image.convert("L").getdata()) > 0

    def test_overlay_is_transparent_between_tiles(self, settings):
        overlay = tiled_overlay((400, 300), settings.watermark)

        assert overlay.mode == "RGBA"
        # Rows between the first and second line of text
        assert overlay.getpixel((10, 100))[3] == 0

    def test_overlay_opacity(self, settings):
        overlay = tiled_overlay((400, 300), settings.watermark)

        alphas = {pixel[3] for pixel in overlay.getdata()}
        assert max(alphas) <= int(255 * settings.watermark.opacity)

    @pytest.mark.parametrize(
        "extension,expected",
        [
            (".png", {"format": "PNG", "compress_level": 9}),
            (".JPG", {"format": "JPEG", "quality": 90}),
            (".jpeg", {"format": "JPEG", "quality": 90}),
            (".webp", {"format": "WEBP", "quality": 90}),
            (".gif", {"format": "GIF"}),
        ],
    )
    def test_encoder_options(self, settings, extension, expected):
        assert encoder_options(extension, settings.watermark) == expected
