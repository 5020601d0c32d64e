'''
Thin wrapper over libnvcuvid: the hardware decoder engine as seen by nvpipe.decoder.

The decoder object and the parser are independent. The parser splits a compressed
unit into pictures and calls back into python (sequence, decode, display); the
decode callback is expected to hand the picture to the decoder object via
decode_picture(). Decoded frames stay inside the decoder until mapped with
map_frame(), and every mapping must be paired with unmap_frame().

Handles are returned as opaque values; all failures raise CUError.
'''
from ctypes import *
from functools import lru_cache

from .cuda import check
from .cuviddec import *
from .nvcuvid import *

import logging
log = logging.getLogger(__name__)

@lru_cache(maxsize=None)
def libnvcuvid():
    return cdll.LoadLibrary('libnvcuvid.so')

class Parser:
    '''
    a live cuvid parser together with the ctypes callbacks it points to;
    the callbacks must stay referenced for as long as the parser lives
    '''
    def __init__(self):
        self.handle = CUvideoparser()
        self.callbacks = ()
        self.exception = None

    def catch_exception(self, func):
        '''
        wrapper for callbacks, so they return the error code as expected by cuvid;
        '''
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except BaseException as e: # catch keyboard interrupt as well
                log.debug(f'callback exception logged {e!r}')
                # recorded; parse_unit raises it once cuvid returns
                self.exception = e
                return 0
        return wrapper

class Cuvid:
    def __init__(self):
        self.lib = libnvcuvid()

    def create_decoder(self, codec, input_size, output_size, num_surfaces = 2):
        """create a hardware decoder object

        Args:
            codec (cudaVideoCodec): codec of the stream
            input_size (tuple): (width, height) of the coded pictures
            output_size (tuple): (width, height) frames are scaled to when mapped
            num_surfaces (int, optional): number of decode surfaces. Defaults to 2.

        Returns:
            opaque decoder handle
        """
        iwidth, iheight = input_size
        dstwidth, dstheight = output_size
        info = CUVIDDECODECREATEINFO(
            CodecType = codec,
            ulWidth = iwidth,
            ulHeight = iheight,
            ulNumDecodeSurfaces = num_surfaces,
            ChromaFormat = cudaVideoChromaFormat.YUV420,
            OutputFormat = cudaVideoSurfaceFormat.NV12,
            DeinterlaceMode = cudaVideoDeinterlaceMode.Adaptive,
            ulTargetWidth = dstwidth,
            ulTargetHeight = dstheight,
            display_area = SRECT(left = 0, top = 0, right = iwidth, bottom = iheight),
            ulNumOutputSurfaces = 1,
            ulCreationFlags = cudaVideoCreateFlags.PreferCUVID,
            vidLock = None
        )
        decoder = CUvideodecoder()
        check(self.lib.cuvidCreateDecoder(byref(decoder), byref(info)))
        log.debug(f'created decoder {iwidth}x{iheight} -> {dstwidth}x{dstheight}')
        return decoder

    def destroy_decoder(self, decoder):
        check(self.lib.cuvidDestroyDecoder(decoder))

    def create_parser(self, codec, on_sequence, on_picture_decode, on_display,
                      max_surfaces = 2, error_threshold = 100, max_display_delay = 0):
        """create a parser that drives the given callbacks

        The callbacks are called with the dereferenced cuvid structure
        (CUVIDEOFORMAT, CUVIDPICPARAMS, CUVIDPARSERDISPINFO) and should return
        the value cuvid expects (non-zero for success). Exceptions they raise
        are re-raised by parse_unit.

        Returns:
            Parser
        """
        parser = Parser()

        def handle_sequence(user_data, fmt):
            return on_sequence(fmt.contents)

        def handle_decode(user_data, pic):
            return on_picture_decode(pic.contents)

        def handle_display(user_data, info):
            if not bool(info):
                # EOS notification
                return 1
            return on_display(info.contents)

        parser.callbacks = (
            PFNVIDSEQUENCECALLBACK(parser.catch_exception(handle_sequence)),
            PFNVIDDECODECALLBACK(parser.catch_exception(handle_decode)),
            PFNVIDDISPLAYCALLBACK(parser.catch_exception(handle_display)),
        )
        # when max_display_delay > 0, we can't assure that each input frame will be
        # ready immediately
        p = CUVIDPARSERPARAMS(
            CodecType = codec,
            ulMaxNumDecodeSurfaces = max_surfaces,
            ulErrorThreshold = error_threshold,
            ulMaxDisplayDelay = max_display_delay,
            pUserData = None,
            pfnSequenceCallback = parser.callbacks[0],
            pfnDecodePicture = parser.callbacks[1],
            pfnDisplayPicture = parser.callbacks[2],
        )
        check(self.lib.cuvidCreateVideoParser(byref(parser.handle), byref(p)))
        return parser

    def destroy_parser(self, parser):
        check(self.lib.cuvidDestroyVideoParser(parser.handle))
        parser.handle = CUvideoparser()

    def parse_unit(self, parser, payload, size):
        """send a compressed unit to the parser; the callbacks run before this returns

        Args:
            parser (Parser): from create_parser
            payload (int): host address of the data
            size (int): number of bytes
        """
        pkt = CUVIDSOURCEDATAPACKET(
            flags = 0,
            payload_size = size,
            payload = cast(c_void_p(payload), POINTER(c_ubyte)),
            timestamp = 0
        )
        result = self.lib.cuvidParseVideoData(parser.handle, byref(pkt))
        # catch: cuvidParseVideoData does not propagate the error return code of
        # our callbacks, it still returns CUDA_SUCCESS.
        # therefore we must check the exception here, even if the call succeeded
        if parser.exception is not None:
            e = parser.exception
            parser.exception = None
            raise e
        check(result)

    def decode_picture(self, decoder, pic):
        # pic is the structure cuvid handed to the decode callback
        check(self.lib.cuvidDecodePicture(decoder, byref(pic)))

    def map_frame(self, decoder, index):
        """
        Returns:
            tuple: (device pointer, pitch in bytes) of the NV12 frame
        """
        params = CUVIDPROCPARAMS(progressive_frame = 1)
        devptr = c_ulonglong() # according to cuviddec, the argument type of cuvidMapVideoFrame64
        pitch = c_uint()
        check(self.lib.cuvidMapVideoFrame64(decoder, c_int(index), byref(devptr), byref(pitch), byref(params)))
        return devptr.value, pitch.value

    def unmap_frame(self, decoder, devptr):
        # catch: must pass as c_ulonglong, otherwise ctypes passes a 32-bit int
        check(self.lib.cuvidUnmapVideoFrame64(decoder, c_ulonglong(devptr)))
