# This file is the python ctypes version of the parts of nvcuvid.h nvpipe uses

from ctypes import *
from .cuviddec import CUVIDPICPARAMS

CUresult = c_int
CUvideoparser = c_void_p # opaque
CUvideotimestamp = c_longlong

class FRAMERATE(Structure):
    _fields_ = [('numerator', c_uint),
                ('denominator', c_uint)]

class IRECT(Structure):
    _fields_ = [('left', c_int),
                ('top', c_int),
                ('right', c_int),
                ('bottom', c_int)]

class CUVIDEOFORMAT(Structure):
    # trailing fields (bitrate, aspect ratio, signal description) omitted,
    # cuvid owns the memory
    _fields_ = [('codec', c_int), # cudaVideoCodec
                ('frame_rate', FRAMERATE),
                ('progressive_sequence', c_ubyte),
                ('bit_depth_luma_minus8', c_ubyte),
                ('bit_depth_chroma_minus8',c_ubyte),
                ('min_num_decode_surfaces', c_ubyte),
                ('coded_width', c_uint),
                ('coded_height', c_uint),
                ('display_area', IRECT),
                ('chroma_format', c_int), # cudaVideoChromaFormat
                ]

class CUVIDPARSERDISPINFO(Structure):
    _fields_ = [('picture_index', c_int),
                ('progressive_frame', c_int),
                ('top_field_first', c_int),
                ('repeat_first_field', c_int),
                ('timestamp', CUvideotimestamp)
                ]

PFNVIDSEQUENCECALLBACK = PYFUNCTYPE(CUresult, c_void_p, POINTER(CUVIDEOFORMAT))
PFNVIDDECODECALLBACK = PYFUNCTYPE(CUresult, c_void_p, POINTER(CUVIDPICPARAMS))
PFNVIDDISPLAYCALLBACK = PYFUNCTYPE(CUresult, c_void_p, POINTER(CUVIDPARSERDISPINFO))

class CUVIDPARSERPARAMS(Structure):
    _fields_ = [('CodecType', c_int), # cudaVideoCodec
                ('ulMaxNumDecodeSurfaces', c_uint),
                ('ulClockRate', c_uint),
                ('ulErrorThreshold', c_uint),
                ('ulMaxDisplayDelay', c_uint),
                ('bAnnexb', c_uint, 1),
                ('uReserved', c_uint, 31),
                ('uReserved1', c_uint * 4),
                ('pUserData', c_void_p),
                ('pfnSequenceCallback', PFNVIDSEQUENCECALLBACK),
                ('pfnDecodePicture', PFNVIDDECODECALLBACK),
                ('pfnDisplayPicture', PFNVIDDISPLAYCALLBACK),
                ('pfnGetOperatingPoint', c_void_p), # AV1 only
                ('pvReserved2', c_void_p * 6),
                ('pExtVideoInfo', c_void_p)
    ]

class CUVIDSOURCEDATAPACKET(Structure):
    _fields_ = [('flags', c_ulong),
                ('payload_size', c_ulong),
                ('payload', POINTER(c_ubyte)),
                ('timestamp', CUvideotimestamp)
                ]
