"""NV12 -> packed RGB conversion, run with torch on a dedicated CUDA stream."""
import torch

import logging
log = logging.getLogger(__name__)

# BT.601, rows are R, G, B; columns are Y, U, V
BT601 = [[1, 0, 1.402], [1, -0.344136, -0.714136], [1, 1.772, 0]]

def extract_stream_ptr(stream):
    """extract cuda stream raw pointer from several known wrappers

    Args:
        stream : cuda stream wrapper

    Raises:
        Exception: the cuda stream wrapper is not supported

    Returns:
        [int]: the raw cuda stream pointer, casted to int
    """
    if stream is None:
        return 0 # legacy default stream
    elif isinstance(stream, int):
        return int(stream)
    elif hasattr(stream, 'cuda_stream'):
        # torch
        return stream.cuda_stream
    elif hasattr(stream, 'ptr'):
        # cupy
        return stream.ptr
    elif hasattr(stream, 'handle'):
        # pycuda
        return stream.handle
    else:
        raise Exception(f'Unknown stream type {type(stream)}')

class CudaArray:
    '''
    raw device memory we don't own, exposed so torch can wrap it without a copy
    '''
    def __init__(self, ptr, shape, strides):
        self.ptr = ptr
        self.shape = shape
        self.strides = strides

    @property
    def __cuda_array_interface__(self):
        return {
            'shape': self.shape,
            'typestr': '|u1',
            'strides': self.strides,
            'version': 3,
            'data': (self.ptr, False), # false = not read-only
            # ordering is handled by the caller through events
            'stream': None
        }

def nv12_to_rgb(nv12, width, height, matrix = None):
    """convert one NV12 frame

    Args:
        nv12 (torch.Tensor): uint8 [height * 3 / 2, pitch], pitch >= width
        width (int): width of the frame
        height (int): height of the frame, even
        matrix (torch.Tensor, optional): YUV -> RGB matrix. Defaults to BT601.

    Returns:
        torch.Tensor: uint8 [height, width, 3]
    """
    assert height % 2 == 0
    assert nv12.dtype == torch.uint8
    if matrix is None:
        matrix = torch.as_tensor(BT601, device = nv12.device)

    # chroma rows hold interleaved U,V pairs, so an odd width still needs the last pair
    chroma_width = width + (width & 1)
    Y = nv12[:height, :width]
    UV = nv12[height:height // 2 * 3, :chroma_width]
    U = UV[:, 0::2]
    V = UV[:, 1::2]

    # limited (MPEG) range
    y = (Y.type(torch.float) - 16) / 219
    u = (U.type(torch.float) - 128) / 224
    v = (V.type(torch.float) - 128) / 224

    # u,v is subsampled
    u = u.repeat_interleave(2, dim = 0).repeat_interleave(2, dim = 1)[:, :width]
    v = v.repeat_interleave(2, dim = 0).repeat_interleave(2, dim = 1)[:, :width]

    yuv = torch.stack((y, u, v), dim = -1)
    rgb = yuv @ matrix.T
    rgb = torch.clamp(rgb * 255 + 0.5, 0, 255)
    return rgb.type(torch.uint8)

class Nv12ToRgb:
    """The decoder's conversion stage.

    submit() only queues work on self.stream; sync() waits for it. Anything
    else wanting to order against the conversion can use the raw stream
    pointer in self.stream.
    """

    def __init__(self, device = None):
        if device is None:
            device = torch.cuda.current_device()
        self.device = torch.device('cuda', device)
        self.torch_stream = torch.cuda.Stream(device = self.device)
        self.stream = extract_stream_ptr(self.torch_stream)
        with torch.cuda.stream(self.torch_stream):
            self.matrix = torch.as_tensor(BT601, device = self.device)
        log.debug(f'conversion stream 0x{self.stream:x} on {self.device}')

    def submit(self, src, width, height, dst, pitch):
        """queue conversion of the NV12 frame at src into width*height*3 bytes at dst

        Args:
            src (int): device address of the NV12 frame
            width (int): width in pixels
            height (int): height in pixels
            dst (int): device address of the RGB output
            pitch (int): row pitch of the NV12 frame in bytes
        """
        nv12 = torch.as_tensor(CudaArray(src, (height // 2 * 3, pitch), (pitch, 1)), device = self.device)
        out = torch.as_tensor(CudaArray(dst, (height, width, 3), (width * 3, 3, 1)), device = self.device)
        with torch.cuda.stream(self.torch_stream):
            out.copy_(nv12_to_rgb(nv12, width, height, self.matrix))

    def sync(self):
        self.torch_stream.synchronize()

    def destroy(self):
        self.sync()
        self.matrix = None
        self.torch_stream = None
