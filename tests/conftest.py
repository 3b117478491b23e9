import base64
import io

import pytest
from PIL import Image


def png_data_url(size=(8, 8), colour="red"):
    buffer = io.BytesIO()
    Image.new("RGB", size, colour).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture
def tiny_grid_png():
    """A 1x2 grid image: red left cell, blue right cell, 8x8 pixels each."""
    image = Image.new("RGB", (16, 8), "red")
    image.paste(Image.new("RGB", (8, 8), "blue"), (8, 0))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture
def make_png():
    return png_data_url
