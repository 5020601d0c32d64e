"""Low-level CUDA and CUVID bindings.

Most users should use nvpipe.decoder instead.

Modules:
    cuda: CUDA runtime wrapper and error handling
    cuvid: the NVDEC decoder/parser wrapper used by nvpipe.decoder
    cuviddec: ctypes definitions for CUVID decoder structures
    nvcuvid: ctypes definitions for CUVID parser structures
"""
