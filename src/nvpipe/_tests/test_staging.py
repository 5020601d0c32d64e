import numpy as np
import pytest

from nvpipe import AllocationFailure, CopyFailure, InvalidArgument
from nvpipe import staging
from nvpipe.staging import Residency, StagingBuffer, locate


def test_locate_host_buffers(runtime):
    for obj in (b'abcd', bytearray(b'abcd'), np.arange(4, dtype = np.uint8)):
        buf = locate(runtime, obj)
        assert buf.residency is Residency.HOST
        assert buf.nbytes == 4

    assert not locate(runtime, b'abcd').writable
    assert locate(runtime, bytearray(4)).writable


def test_locate_counts_bytes_not_elements(runtime):
    buf = locate(runtime, np.zeros((2, 3), dtype = np.float32))
    assert buf.nbytes == 24


def test_locate_device_buffer(runtime):
    arr = runtime.device_array(b'abcdef')
    buf = locate(runtime, arr)
    assert buf.on_device
    assert buf.ptr == arr.ptr
    assert buf.nbytes == 6


def test_locate_rejects_what_it_cannot_address(runtime):
    with pytest.raises(InvalidArgument):
        locate(runtime, 'not a buffer')
    with pytest.raises(InvalidArgument):
        locate(runtime, np.zeros((4, 4), dtype = np.uint8)[:, ::2])


def test_host_source_is_used_in_place(runtime):
    s = StagingBuffer(runtime)
    data = np.frombuffer(b'payload', dtype = np.uint8)
    src = locate(runtime, data)
    assert s.prepare(src, 7) == data.ctypes.data
    assert s.capacity == 0
    assert runtime.calls == []


def test_device_source_is_copied(runtime):
    s = StagingBuffer(runtime)
    src = locate(runtime, runtime.device_array(b'payload'))
    ptr = s.prepare(src, 7)
    assert ptr == s.buf.ctypes.data
    assert s.buf.tobytes() == b'payload'


def test_capacity_is_monotonic(runtime):
    s = StagingBuffer(runtime)
    s.prepare(locate(runtime, runtime.device_array(bytes(100))), 100)
    first = s.buf
    s.prepare(locate(runtime, runtime.device_array(bytes(10))), 10)
    assert s.capacity == 100
    assert s.buf is first
    s.prepare(locate(runtime, runtime.device_array(bytes(200))), 200)
    assert s.capacity == 200


def test_growth_failure(runtime, monkeypatch):
    s = StagingBuffer(runtime)

    def no_memory(*args, **kwargs):
        raise MemoryError()

    monkeypatch.setattr(staging.np, 'empty', no_memory)
    with pytest.raises(AllocationFailure):
        s.prepare(locate(runtime, runtime.device_array(bytes(16))), 16)
    assert runtime.calls == []


def test_copy_failure(runtime):
    s = StagingBuffer(runtime)
    runtime.fail.add('memcpy_dtoh')
    with pytest.raises(CopyFailure):
        s.prepare(locate(runtime, runtime.device_array(bytes(16))), 16)
