"""Where caller buffers live, and getting compressed data into host memory.

cuvid's parser only reads host memory, while callers may hand us device
memory. Every buffer crossing the API is located once per call: its address,
size and residency are recorded in a Buffer and threaded through the rest of
the decode.
"""
from enum import Enum
import logging

import numpy as np

from . import AllocationFailure, CopyFailure, InvalidArgument
from .core.cuda import CUDAError

log = logging.getLogger(__name__)

class Residency(Enum):
    HOST = 'host'
    DEVICE = 'device'

class Buffer:
    '''
    a caller buffer with its residency decided
    '''
    def __init__(self, obj, ptr, nbytes, residency, writable):
        self.obj = obj # keep the memory alive while we hold its address
        self.ptr = ptr
        self.nbytes = nbytes
        self.residency = residency
        self.writable = writable

    @property
    def on_device(self):
        return self.residency is Residency.DEVICE

    def __repr__(self):
        return f'<Buffer {self.residency.value} 0x{self.ptr:x} {self.nbytes} bytes>'

def locate(runtime, obj):
    """find the address, size and residency of a caller buffer

    Args:
        runtime (CudaRuntime): answers whether an address is device memory
        obj: anything exposing __cuda_array_interface__ or the buffer protocol

    Raises:
        InvalidArgument: obj is neither, or is not contiguous

    Returns:
        Buffer
    """
    iface = getattr(obj, '__cuda_array_interface__', None)
    if iface is not None:
        itemsize = np.dtype(iface['typestr']).itemsize
        if iface.get('strides') is not None:
            # strides of the C-contiguous layout
            expected = []
            step = itemsize
            for n in reversed(iface['shape']):
                expected.insert(0, step)
                step *= n
            if list(iface['strides']) != expected:
                raise InvalidArgument('device buffer must be contiguous')
        ptr, readonly = iface['data']
        nbytes = int(np.prod(iface['shape'])) * itemsize
        writable = not readonly
        holder = obj
    else:
        try:
            holder = np.frombuffer(obj, dtype = np.uint8)
        except (TypeError, ValueError, BufferError) as e:
            raise InvalidArgument(f'unsupported buffer {type(obj)}: {e}') from e
        ptr = holder.ctypes.data
        nbytes = holder.nbytes
        writable = holder.flags.writeable

    residency = Residency.DEVICE if ptr and runtime.is_device_pointer(ptr) else Residency.HOST
    return Buffer(holder, ptr, nbytes, residency, writable)

class StagingBuffer:
    """Host copy of device-resident compressed input.

    The buffer only ever grows, so that a stream of similarly sized units
    costs one allocation in total.
    """

    def __init__(self, runtime):
        self.runtime = runtime
        self.buf = np.empty(0, dtype = np.uint8)

    @property
    def capacity(self):
        return self.buf.nbytes

    def prepare(self, source, size):
        """
        Args:
            source (Buffer): the compressed unit
            size (int): number of bytes to use from source

        Raises:
            AllocationFailure: growing the staging buffer failed
            CopyFailure: the device to host copy failed

        Returns:
            int: host address cuvid can read size bytes from
        """
        if not source.on_device:
            return source.ptr

        if size > self.capacity:
            try:
                self.buf = np.empty(size, dtype = np.uint8)
            except MemoryError as e:
                log.error(f'allocation failure of {size}-byte temp host buffer')
                raise AllocationFailure(f'cannot allocate {size}-byte staging buffer') from e
            log.debug(f'staging buffer grown to {size} bytes')
        assert self.capacity >= size

        try:
            self.runtime.memcpy_dtoh(self.buf.ctypes.data, source.ptr, size)
        except CUDAError as e:
            log.error(f'copy to temp host buffer failed: {e}')
            raise CopyFailure(f'device to host copy of {size} bytes failed') from e
        return self.buf.ctypes.data

    def free(self):
        self.buf = np.empty(0, dtype = np.uint8)
