from contextlib import contextmanager
from ctypes import *
from functools import lru_cache
import logging

import torch

log = logging.getLogger(__name__)

CUstream = c_void_p
CUdeviceptr = c_ulonglong
CUresult = c_int
cudaError = c_int
cudaEvent = c_void_p

cudaMemcpyDeviceToHost = 2
cudaEventDisableTiming = 2

# the libraries are only needed once a real decoder is created,
# importing this module must work on machines without a driver
@lru_cache(maxsize=None)
def libcuda():
    return cdll.LoadLibrary('libcuda.so')

@lru_cache(maxsize=None)
def libcudart():
    lib = cdll.LoadLibrary('libcudart.so')
    lib.cudaGetErrorString.restype = c_char_p
    return lib

class CUError(Exception):
    '''
    error reported by the driver API, including nvcuvid
    '''
    def __init__(self, cuResult):
        self.cuResult = cuResult

    def __str__(self):
        p = c_char_p()
        try:
            libcuda().cuGetErrorString(self.cuResult, byref(p))
        except OSError:
            return f'CUDA driver error {self.cuResult}'
        if not p.value:
            return f'CUDA driver error {self.cuResult}'
        return p.value.decode('utf-8')

class CUDAError(Exception):
    '''
    error reported by the runtime API
    '''
    def __init__(self, cudaError):
        self.cudaError = cudaError

    def __str__(self):
        try:
            p = libcudart().cudaGetErrorString(c_int(self.cudaError))
        except OSError:
            return f'CUDA runtime error {self.cudaError}'
        return p.decode('utf-8')

def check(cuResult):
    if cuResult > 0:
        raise CUError(cuResult)

def check_rt(cudaError):
    if cudaError > 0:
        raise CUDAError(cudaError)

class cudaPointerAttributes(Structure):
    _fields_ = [('type', c_int), # cudaMemoryType
                ('device', c_int),
                ('devicePointer', c_void_p),
                ('hostPointer', c_void_p)]

class CudaRuntime:
    """The part of the CUDA runtime the decoder needs.

    Pointers are plain python ints, events are opaque handles.
    Every failing call raises CUDAError.
    """

    def __init__(self, device = None, profile = True):
        self.lib = libcudart()
        self.profile = profile
        if device is not None:
            check_rt(self.lib.cudaSetDevice(c_int(device)))

    def is_device_pointer(self, ptr):
        """
        Returns:
            bool: True if ptr was allocated on the device
        """
        attr = cudaPointerAttributes()
        err = self.lib.cudaPointerGetAttributes(byref(attr), c_void_p(ptr))
        if err != 0:
            # clear the error so it doesn't surface in a later call
            self.lib.cudaGetLastError()
            return False
        return attr.devicePointer is not None

    def malloc(self, nbytes):
        p = c_void_p()
        check_rt(self.lib.cudaMalloc(byref(p), c_size_t(nbytes)))
        return p.value

    def free(self, ptr):
        check_rt(self.lib.cudaFree(c_void_p(ptr)))

    def memcpy_dtoh(self, dst, src, nbytes):
        check_rt(self.lib.cudaMemcpy(c_void_p(dst), c_void_p(src), c_size_t(nbytes), cudaMemcpyDeviceToHost))

    def memcpy_dtoh_async(self, dst, src, nbytes, stream):
        check_rt(self.lib.cudaMemcpyAsync(c_void_p(dst), c_void_p(src), c_size_t(nbytes), cudaMemcpyDeviceToHost, CUstream(stream)))

    def event_create(self):
        e = cudaEvent()
        check_rt(self.lib.cudaEventCreateWithFlags(byref(e), c_uint(cudaEventDisableTiming)))
        return e

    def event_destroy(self, event):
        check_rt(self.lib.cudaEventDestroy(event))

    def event_record(self, event, stream = 0):
        check_rt(self.lib.cudaEventRecord(event, CUstream(stream)))

    def stream_wait_event(self, stream, event):
        check_rt(self.lib.cudaStreamWaitEvent(CUstream(stream), event, c_uint(0)))

    def device_synchronize(self):
        check_rt(self.lib.cudaDeviceSynchronize())

    @contextmanager
    def range(self, name):
        '''
        NVTX range, shows up in nsight systems
        '''
        if not self.profile:
            yield
            return
        torch.cuda.nvtx.range_push(name)
        try:
            yield
        finally:
            torch.cuda.nvtx.range_pop()
