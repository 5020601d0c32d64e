"""Decode side of NvPipe: NVDEC hardware decoding of H.264 into RGB.

A Decoder takes one compressed unit at a time (as produced by the NvPipe
encoder), feeds it to NVIDIA's CUVID parser and decoder, and writes the
frame into the caller's buffer as packed 8-bit RGB at whatever size the
caller asks for.

Quick Start:
    import numpy as np
    from nvpipe.decoder import create_decoder

    decoder = create_decoder()
    rgb = np.empty(1920 * 1080 * 3, dtype=np.uint8)
    for packet in packets:
        decoder.decode(packet, rgb, 1920, 1080)
        show(rgb)
    decoder.destroy()

Both the compressed input and the output may live in host memory (anything
exposing the buffer protocol, e.g. numpy arrays) or in device memory
(anything exposing __cuda_array_interface__, e.g. torch CUDA tensors).

Requirements:
    - NVIDIA GPU with NVDEC support
    - NVIDIA driver with libnvcuvid.so, CUDA runtime libcudart.so
    - PyTorch with CUDA support (color conversion)

Exceptions:
    NvPipeError: base class of everything below.
    InvalidArgument: malformed arguments, or input that carries no frame.
    AllocationFailure: host or device memory could not be allocated.
    CopyFailure: a transfer between host and device failed.
    DecodeError: the parser, decoder or conversion rejected the input or failed.
    ConfigurationError: operation not available on this kind of codec object.
"""

class NvPipeError(Exception):
    """Base class of all errors raised by nvpipe."""
    pass

class InvalidArgument(NvPipeError):
    """Raised on zero or odd sizes, empty input, or metadata-only input."""
    pass

class AllocationFailure(NvPipeError):
    """Raised when a host or device buffer cannot be (re)allocated."""
    pass

class CopyFailure(NvPipeError):
    """Raised when a host <-> device transfer fails."""
    pass

class DecodeError(NvPipeError):
    """Raised when CUVID or the color conversion fails."""
    pass

class ConfigurationError(NvPipeError):
    """Raised when a decoder is asked to do encoder things."""
    pass
