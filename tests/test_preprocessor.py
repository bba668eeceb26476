import io
import random

import numpy as np
import pytest
from PIL import Image, ImageDraw

from billflow.core.utils.error_handler import PreprocessError
from billflow.integrations.imaging.preprocessor import (
    OUTLINE_NOT_FOUND,
    ImagePreprocessor,
    is_pdf,
    order_corners,
)


def encode(image, format='PNG'):
    buffer = io.BytesIO()
    image.save(buffer, format=format)
    return buffer.getvalue()


def decode(data):
    return Image.open(io.BytesIO(data))


@pytest.fixture
def preprocessor():
    return ImagePreprocessor()


def photo_with_bill():
    """A dark desk with a light sheet of paper in the middle"""
    image = Image.new('RGB', (400, 400), (40, 40, 40))
    draw = ImageDraw.Draw(image)
    draw.rectangle((100, 80, 300, 320), fill=(245, 245, 240))
    draw.text((120, 100), "52,340", fill=(0, 0, 0))
    return image


def test_detected_bill_is_cropped(preprocessor):
    result = preprocessor.process(encode(photo_with_bill()), 'image/png')

    assert result.doc_detected is True
    assert result.note is None
    scan = decode(result.scan_png)
    assert 150 < scan.size[0] < 400
    assert 200 < scan.size[1] < 400
    assert decode(result.track_a_png).size == scan.size


def test_blank_photo_keeps_full_frame(preprocessor):
    blank = Image.new('RGB', (300, 200), 'white')

    result = preprocessor.process(encode(blank), 'image/png')

    assert result.doc_detected is False
    assert result.note == OUTLINE_NOT_FOUND
    assert decode(result.scan_png).size == (300, 200)


def test_track_b_is_binarized(preprocessor):
    result = preprocessor.process(encode(photo_with_bill()), 'image/png')

    track_b = decode(result.track_b_png)
    assert track_b.mode == 'L'
    assert set(track_b.getdata()) <= {0, 255}


def test_jpeg_input_is_accepted(preprocessor):
    result = preprocessor.process(encode(photo_with_bill(), format='JPEG'), 'image/jpeg')
    assert decode(result.scan_png).format == 'PNG'


def test_large_photo_is_detected_at_full_resolution(preprocessor):
    image = Image.new('RGB', (2400, 1600), (30, 30, 30))
    ImageDraw.Draw(image).rectangle((600, 300, 1800, 1300), fill=(250, 250, 250))

    result = preprocessor.process(encode(image), 'image/png')

    scan = decode(result.scan_png)
    assert result.doc_detected is True
    assert 1000 < scan.size[0] < 1400
    assert 800 < scan.size[1] < 1200


@pytest.mark.parametrize("data", [b"", b"definitely not an image"])
def test_undecodable_input_raises(preprocessor, data):
    with pytest.raises(PreprocessError):
        preprocessor.process(data, 'image/png')


def test_pdf_detection():
    assert is_pdf(b"%PDF-1.7 ...")
    assert is_pdf(b"anything", 'application/pdf')
    assert not is_pdf(b"\x89PNG", 'image/png')


def test_tilted_bill_is_flattened(preprocessor):
    image = Image.new('RGB', (400, 420), (35, 35, 35))
    ImageDraw.Draw(image).polygon([(120, 60), (330, 100), (290, 360), (80, 320)], fill=(245, 245, 240))

    result = preprocessor.process(encode(image), 'image/png')

    assert result.doc_detected is True
    scan = decode(result.scan_png)
    # Side lengths of the sheet are about 214 and 263 pixels
    assert 195 < scan.size[0] < 240
    assert 245 < scan.size[1] < 290


def test_small_bill_on_textured_desk_is_not_detected(preprocessor):
    rng = random.Random(7)
    image = Image.new('RGB', (800, 600), (90, 70, 50))
    draw = ImageDraw.Draw(image)
    for _ in range(300):
        x, y = rng.randrange(800), rng.randrange(600)
        shade = rng.choice([20, 160, 200])
        draw.line((x, y, x + rng.randint(-15, 15), y + rng.randint(-15, 15)), fill=(shade, shade, shade), width=1)
    draw.rectangle((340, 250, 460, 350), fill=(250, 250, 250))

    result = preprocessor.process(encode(image), 'image/png')

    assert result.doc_detected is False
    assert result.note == OUTLINE_NOT_FOUND
    assert decode(result.scan_png).size == (800, 600)


def test_corners_are_ordered_clockwise_from_top_left():
    corners = np.array([[290, 360], [120, 60], [80, 320], [330, 100]], dtype=np.float32)

    ordered = order_corners(corners)

    assert ordered.tolist() == [[120, 60], [330, 100], [290, 360], [80, 320]]
