import pytest
import torch

from cropdoctor.services.errors import ImageDecodeError
from cropdoctor.services.preprocess import preprocess

from conftest import image_bytes


def test_default_shape_and_range():
    tensor = preprocess(image_bytes(size=(40, 25)))
    assert tensor.shape == (1, 224, 224, 3)
    assert tensor.dtype == torch.float32
    assert float(tensor.min()) >= 0.0
    assert float(tensor.max()) <= 1.0


def test_solid_color_normalized_per_channel():
    tensor = preprocess(image_bytes(color=(255, 0, 51), size=(9, 5)), size=(4, 6))
    assert tensor.shape == (1, 4, 6, 3)
    assert torch.allclose(tensor[0, :, :, 0], torch.ones(4, 6))
    assert torch.allclose(tensor[0, :, :, 1], torch.zeros(4, 6))
    assert torch.allclose(tensor[0, :, :, 2], torch.full((4, 6), 0.2))


def test_alpha_and_greyscale_become_rgb():
    assert preprocess(image_bytes(mode="RGBA"), size=(4, 4)).shape == (1, 4, 4, 3)
    assert preprocess(image_bytes(mode="L"), size=(4, 4)).shape == (1, 4, 4, 3)


def test_jpeg_input_is_accepted():
    assert preprocess(image_bytes(fmt="JPEG"), size=(8, 8)).shape == (1, 8, 8, 3)


@pytest.mark.parametrize("payload", [b"", b"definitely not an image", b"\x89PNG\r\n\x1a\n broken"])
def test_undecodable_bytes_raise(payload):
    with pytest.raises(ImageDecodeError):
        preprocess(payload)
