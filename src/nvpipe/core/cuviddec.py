# this file is the python ctypes version of the parts of cuviddec.h nvpipe uses

from ctypes import *
from enum import IntEnum

class cudaVideoSurfaceFormat(IntEnum):
    NV12 = 0
    P016 = 1
    YUV444 = 2
    YUV444_16Bit = 3

class cudaVideoCodec(IntEnum):
    MPEG1 = 0
    MPEG2 = 1
    MPEG4 = 2
    VC1  = 3
    H264 = 4
    JPEG = 5
    H264_SVC = 6
    H264_MVC = 7
    HEVC = 8
    VP8 = 9
    VP9 = 10
    AV1 = 11

class cudaVideoChromaFormat(IntEnum):
    MONOCHROME = 0
    YUV420 = 1
    YUV422 = 2
    YUV444 = 3

class cudaVideoCreateFlags(IntEnum):
    Default = 0
    PreferCUDA = 1
    PreferDXVA = 2
    PreferCUVID = 4

class cudaVideoDeinterlaceMode(IntEnum):
    Weave = 0
    Bob = 1
    Adaptive = 2

CUstream = c_void_p
CUvideodecoder = c_void_p # opaque
CUvideoctxlock = c_void_p # opaque

class CUVIDPICPARAMS(Structure):
    # note: fields incomplete, only the leading ones are read.
    # we never allocate this struct ourselves, cuvid hands us a pointer
    # and we pass that same pointer back to cuvidDecodePicture
    _fields_ = [
        ('PicWidthInMbs', c_int),
        ('FrameHeightInMbs', c_int),
        ('CurrPicIdx', c_int)
    ]

class CUVIDPROCPARAMS(Structure):
    _fields_ = [('progressive_frame', c_int),
                ('second_field', c_int),
                ('top_field_first', c_int),
                ('unpaired_field', c_int),
                ('reserved_flags', c_uint),
                ('reserved_zero', c_uint),
                ('raw_input_dptr', c_ulonglong),
                ('raw_input_pitch', c_uint),
                ('raw_input_format', c_uint),
                ('raw_output_dptr', c_ulonglong),
                ('raw_output_pitch', c_uint),
                ('Reserved1', c_uint),
                ('output_stream', CUstream),
                ('Reserved', c_uint * 46),
                ('histogram_dptr', POINTER(c_ulonglong)),
                ('Reserved2', c_void_p * 1)]

class SRECT(Structure):
    _fields_ = [('left', c_short),
                ('top', c_short),
                ('right', c_short),
                ('bottom', c_short)]

class CUVIDDECODECREATEINFO(Structure):
    _fields_ = [
        ('ulWidth', c_ulong),
        ('ulHeight', c_ulong),
        ('ulNumDecodeSurfaces', c_ulong),
        ('CodecType', c_int), # cudaVideoCodec
        ('ChromaFormat', c_int), # cudaVideoChromaFormat
        ('ulCreationFlags', c_ulong),
        ('bitDepthMinus8', c_ulong),
        ('ulIntraDecodeOnly', c_ulong),
        ('ulMaxWidth', c_ulong),
        ('ulMaxHeight', c_ulong),
        ('Reserved1', c_ulong),
        ('display_area', SRECT),
        ('OutputFormat', c_int), # cudaVideoSurfaceFormat
        ('DeinterlaceMode', c_int), # cudaVideoDeinterlaceMode
        ('ulTargetWidth', c_ulong),
        ('ulTargetHeight', c_ulong),
        ('ulNumOutputSurfaces', c_ulong),
        ('vidLock', CUvideoctxlock),
        ('target_rect', SRECT),
        ('enableHistogram', c_ulong),
        ('Reserved2', c_ulong * 4)
    ]
