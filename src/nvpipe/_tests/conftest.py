"""Stand-ins for the CUDA runtime, cuvid and the conversion stage.

"Device" memory is plain host memory registered with FakeRuntime, so copies
are real memmoves and tests can look at every byte that moved.
"""
import contextlib
import ctypes

import numpy as np
import pytest

from nvpipe.core.cuda import CUDAError, CUError
from nvpipe.core.cuviddec import CUVIDPICPARAMS, cudaVideoChromaFormat, cudaVideoCodec
from nvpipe.core.nvcuvid import CUVIDEOFORMAT, CUVIDPARSERDISPINFO, IRECT
from nvpipe.decoder import create_decoder

class DeviceArray:
    '''
    a buffer FakeRuntime reports as device memory
    '''
    def __init__(self, runtime, data):
        self.host = np.frombuffer(bytearray(data), dtype = np.uint8)
        self.ptr = runtime.register(self.host)

    @property
    def __cuda_array_interface__(self):
        return {
            'shape': (self.host.nbytes,),
            'typestr': '|u1',
            'strides': None,
            'version': 3,
            'data': (self.ptr, False),
            'stream': None,
        }

class FakeRuntime:
    def __init__(self):
        self.device = {} # address -> backing array
        self.calls = []
        self.fail = set()
        self.events = []

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise CUDAError(2)

    def register(self, arr):
        self.device[arr.ctypes.data] = arr
        return arr.ctypes.data

    def device_array(self, data):
        if isinstance(data, int):
            data = bytes(data)
        return DeviceArray(self, data)

    def is_device_pointer(self, ptr):
        return any(start <= ptr < start + arr.nbytes for start, arr in self.device.items())

    def malloc(self, nbytes):
        self._call('malloc')
        return self.register(np.zeros(nbytes, dtype = np.uint8))

    def free(self, ptr):
        self._call('free')
        del self.device[ptr]

    def memcpy_dtoh(self, dst, src, nbytes):
        self._call('memcpy_dtoh')
        assert self.is_device_pointer(src)
        ctypes.memmove(dst, src, nbytes)

    def memcpy_dtoh_async(self, dst, src, nbytes, stream):
        self._call('memcpy_dtoh_async')
        assert self.is_device_pointer(src)
        ctypes.memmove(dst, src, nbytes)

    def event_create(self):
        self._call('event_create')
        event = object()
        self.events.append(event)
        return event

    def event_destroy(self, event):
        self._call('event_destroy')
        self.events.remove(event)

    def event_record(self, event, stream = 0):
        self._call('event_record')

    def stream_wait_event(self, stream, event):
        self._call('stream_wait_event')

    def device_synchronize(self):
        self._call('device_synchronize')

    def range(self, name):
        return contextlib.nullcontext()

class FakeHardwareDecoder:
    def __init__(self, input_size, output_size):
        self.input_size = input_size
        self.output_size = output_size
        self.live = True
        self.decoded = []

class FakeCuvid:
    """A parser/decoder pair driven by the payload bytes.

    Payloads starting with b'META' carry only a sequence header; anything
    else carries one picture of the current stream size (width, height).
    With latency = n, the decode and display callbacks for a picture only
    fire n submissions later.
    """

    def __init__(self, runtime, width = 64, height = 64):
        self.runtime = runtime
        self.width = width
        self.height = height
        self.bit_depth = 8
        self.latency = 0
        self.fail = set()
        self.held = []
        self.parsed = []
        self.decoders = []
        self.destroyed = []
        self.parsers = []
        self.destroyed_parsers = []
        self.mapped = []
        self.unmapped = []
        self.slot = 0

    def _call(self, name):
        if name in self.fail:
            raise CUError(1)

    def create_decoder(self, codec, input_size, output_size, num_surfaces = 2):
        self._call('create_decoder')
        assert codec == cudaVideoCodec.H264
        decoder = FakeHardwareDecoder(input_size, output_size)
        self.decoders.append(decoder)
        return decoder

    def destroy_decoder(self, decoder):
        decoder.live = False
        self.destroyed.append(decoder)
        self._call('destroy_decoder')

    def create_parser(self, codec, on_sequence, on_picture_decode, on_display, **kwargs):
        self._call('create_parser')
        parser = (on_sequence, on_picture_decode, on_display, kwargs)
        self.parsers.append(parser)
        return parser

    def destroy_parser(self, parser):
        self.destroyed_parsers.append(parser)
        self._call('destroy_parser')

    def parse_unit(self, parser, payload, size):
        data = ctypes.string_at(payload, size)
        self.parsed.append(data)
        self._call('parse_unit')
        on_sequence, on_picture_decode, on_display, _ = parser

        w, h = self.width, self.height
        fmt = CUVIDEOFORMAT(
            codec = cudaVideoCodec.H264,
            progressive_sequence = 1,
            bit_depth_luma_minus8 = self.bit_depth - 8,
            coded_width = (w + 15) // 16 * 16,
            coded_height = (h + 15) // 16 * 16,
            display_area = IRECT(left = 0, top = 0, right = w, bottom = h),
            chroma_format = cudaVideoChromaFormat.YUV420,
        )
        on_sequence(fmt)
        if data.startswith(b'META'):
            return

        self.held.append(CUVIDPICPARAMS(
            PicWidthInMbs = (w + 15) // 16,
            FrameHeightInMbs = (h + 15) // 16,
            CurrPicIdx = self.slot,
        ))
        self.slot = (self.slot + 1) % 2
        while len(self.held) > self.latency:
            pic = self.held.pop(0)
            on_picture_decode(pic)
            on_display(CUVIDPARSERDISPINFO(picture_index = pic.CurrPicIdx, progressive_frame = 1))

    def decode_picture(self, decoder, pic):
        self._call('decode_picture')
        assert decoder.live
        decoder.decoded.append(pic.CurrPicIdx)

    def map_frame(self, decoder, index):
        self._call('map_frame')
        assert decoder.live
        width, height = decoder.output_size
        pitch = (width + 255) // 256 * 256
        frame = np.full(pitch * height * 3 // 2, 128, dtype = np.uint8)
        ptr = self.runtime.register(frame)
        self.mapped.append(ptr)
        return ptr, pitch

    def unmap_frame(self, decoder, devptr):
        self.unmapped.append(devptr)
        self._call('unmap_frame')

class FakeConverter:
    FILL = 0x7f

    def __init__(self):
        self.stream = 0x5eed
        self.submitted = []
        self.syncs = 0
        self.fail = set()
        self.destroyed = False

    def submit(self, src, width, height, dst, pitch):
        if 'submit' in self.fail:
            raise RuntimeError('reorganization kernel failed')
        self.submitted.append((src, width, height, dst, pitch))
        ctypes.memset(dst, self.FILL, width * height * 3)

    def sync(self):
        self.syncs += 1
        if 'sync' in self.fail:
            raise RuntimeError('sync failed')

    def destroy(self):
        self.destroyed = True

@pytest.fixture
def runtime():
    return FakeRuntime()

@pytest.fixture
def cuvid(runtime):
    return FakeCuvid(runtime)

@pytest.fixture
def converter():
    return FakeConverter()

@pytest.fixture
def decoder(runtime, cuvid, converter):
    d = create_decoder(runtime = runtime, cuvid = cuvid, converter = lambda device: converter)
    assert d is not None
    yield d
    d.destroy()
