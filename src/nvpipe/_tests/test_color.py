import numpy as np
import pytest
import torch

from nvpipe.color import CudaArray, Nv12ToRgb, extract_stream_ptr, nv12_to_rgb


def nv12(width, height, y, u, v, pitch = None):
    pitch = pitch or width + (width & 1)
    frame = torch.zeros((height // 2 * 3, pitch), dtype = torch.uint8)
    frame[:height, :] = y
    frame[height:, 0::2] = u
    frame[height:, 1::2] = v
    return frame


@pytest.mark.parametrize('y,expected', [(16, 0), (235, 255), (126, 128)])
def test_gray_levels(y, expected):
    rgb = nv12_to_rgb(nv12(8, 4, y, 128, 128), 8, 4)
    assert rgb.shape == (4, 8, 3)
    assert rgb.dtype == torch.uint8
    assert (rgb.int() - expected).abs().max() <= 1


def test_red_and_blue_follow_chroma():
    rgb = nv12_to_rgb(nv12(4, 2, 81, 90, 240), 4, 2)
    r, g, b = rgb[0, 0].tolist()
    assert r > 240 and g < 10 and b < 10

    rgb = nv12_to_rgb(nv12(4, 2, 41, 240, 110), 4, 2)
    r, g, b = rgb[0, 0].tolist()
    assert b > 240 and r < 10 and g < 10


def test_pitch_padding_is_ignored():
    frame = nv12(6, 4, 235, 128, 128, pitch = 16)
    frame[:, 6:] = 0
    rgb = nv12_to_rgb(frame, 6, 4)
    assert rgb.shape == (4, 6, 3)
    assert (rgb == 255).all()


def test_odd_width():
    rgb = nv12_to_rgb(nv12(5, 2, 235, 128, 128), 5, 2)
    assert rgb.shape == (2, 5, 3)
    assert (rgb == 255).all()


def test_extract_stream_ptr():
    assert extract_stream_ptr(None) == 0
    assert extract_stream_ptr(7) == 7

    class Cupy:
        ptr = 11
    assert extract_stream_ptr(Cupy()) == 11


def test_cuda_array_interface():
    a = CudaArray(0x1000, (3, 4), (8, 1))
    iface = a.__cuda_array_interface__
    assert iface['data'] == (0x1000, False)
    assert iface['shape'] == (3, 4)
    assert iface['strides'] == (8, 1)


@pytest.mark.skipif(not torch.cuda.is_available(), reason = 'needs a CUDA device')
def test_converter_on_device():
    conv = Nv12ToRgb()
    src = nv12(64, 32, 235, 128, 128, pitch = 256).cuda()
    dst = torch.zeros((32, 64, 3), dtype = torch.uint8, device = 'cuda')
    torch.cuda.synchronize()
    conv.submit(src.data_ptr(), 64, 32, dst.data_ptr(), 256)
    conv.sync()
    assert (dst == 255).all()
    conv.destroy()
