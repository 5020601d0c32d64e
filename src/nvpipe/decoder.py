'''
Decoder turns one compressed H.264 unit per call into one RGB frame of the size the caller asks for.

Most of the logic here is about sizes. There are four of them:
1) the size the hardware decoder object was created for (dims.wi, dims.hi);
2) the output size it was created for, which is also the size of our RGB
   staging buffer (dims.wdst, dims.hdst);
3) the size of the picture the stream carries, as reported by the decode
   callback (dims.wsrc, dims.hsrc);
4) the size the caller wants now, which is never stored: it is the argument
   to decode().
(1) is not always (3) and (2) is not always (4): windows get resized, the
encoder sees that before we do, and H.264 codes pictures in 16x16 macroblocks,
so the stream size may differ from the output size for the whole session.
On top of that the hardware may lag a frame behind, so a resize requested at
frame N can show up in the stream at N+x.

All of this is resolved the same way: recreate the hardware decoder with the
new sizes and submit the same unit again. decode() runs that as a loop; the
parser callbacks only record what they see.
'''
import logging

from . import AllocationFailure, ConfigurationError, CopyFailure, DecodeError, InvalidArgument
from .color import Nv12ToRgb
from .core.cuda import CUDAError, CUError, CudaRuntime
from .core.cuvid import Cuvid
from .core.cuviddec import cudaVideoChromaFormat, cudaVideoCodec
from .staging import StagingBuffer, locate

log = logging.getLogger(__name__)

# NVDEC can actually do 8kx8k for HEVC, but we only speak H.264.
# streams beyond this are attempted anyway
MAX_WIDTH = 4096
MAX_HEIGHT = 4096

CODEC = cudaVideoCodec.H264
NUM_DECODE_SURFACES = 2
ERROR_THRESHOLD = 100
# distinct geometry changes one decode call may correct before giving up
MAX_RECREATIONS = 4
# when > 0, each input unit is no longer guaranteed to produce its frame
# immediately; diminishing returns beyond 4
MAX_DISPLAY_DELAY = 0

class Dims:
    '''
    sizes tracked across decode calls; see module docstring
    '''
    def __init__(self):
        self.wi = 0
        self.hi = 0
        self.wdst = 0
        self.hdst = 0
        self.wsrc = 0
        self.hsrc = 0

    def __repr__(self):
        return (f'<Dims in={self.wi}x{self.hi} dst={self.wdst}x{self.hdst} '
                f'src={self.wsrc}x{self.hsrc}>')

class Decoder:
    """Decode side of a pipe. Create with create_decoder().

    Not thread safe; use one Decoder per thread.
    """

    def __init__(self, runtime, cuvid, ready, converter,
                 max_width = MAX_WIDTH, max_height = MAX_HEIGHT):
        """
        DO NOT call this by yourself; use create_decoder() instead
        """
        self.runtime = runtime
        self.cuvid = cuvid
        self.ready = ready # recorded once the frame mapping is issued
        self.converter = converter
        self.max_width = max_width
        self.max_height = max_height

        self.initialized = False
        self.dims = Dims()
        self.cuvid_decoder = None # None means it needs (re)creation
        self.cuvid_parser = None # created on first decode
        self.staging = StagingBuffer(runtime)
        self.rgb = 0 # device buffer of wdst*hdst*3 bytes
        # cuvid keeps finished frames in an internal queue and tells us through
        # the display callback which slot was just added; we map that one
        self.idx = None
        self.empty = False
        self.destroyed = False

    # ---- parser callbacks ----

    def handle_sequence(self, fmt):
        log.debug('sequence')
        da = fmt.display_area
        # warn the user if the image is too large, but try it anyway
        if da.right > self.max_width or da.bottom > self.max_height:
            log.warning(f'Video stream exceeds ({self.max_width}x{self.max_height}) limits.')
        if fmt.bit_depth_luma_minus8:
            log.warning(f'Unhandled bit depth ({fmt.bit_depth_luma_minus8}). Was the frame '
                        'compressed by a different version of this library?')
            raise DecodeError(f'unsupported bit depth {fmt.bit_depth_luma_minus8 + 8}')

        # we know we're getting NvPipe's own stream, so the decoder is created for
        # that profile rather than from what fmt says
        if (fmt.codec != CODEC or fmt.chroma_format != cudaVideoChromaFormat.YUV420
                or fmt.progressive_sequence != 1):
            log.warning(f'Unhandled stream: codec {fmt.codec}, chroma {fmt.chroma_format}, '
                        f'progressive {fmt.progressive_sequence}')
            raise DecodeError('stream is not progressive 4:2:0 H.264')

        w = da.right - da.left
        h = da.bottom - da.top
        if fmt.coded_height != h:
            log.debug(f'coded height ({fmt.coded_height}) does not correspond to height ({h}).')

        # first sequence: both the decoder and our RGB buffer need initializing.
        # later changes are picked up by decode() through dims.wsrc/hsrc
        if not self.initialized:
            self._initialize(w, h, w, h)
        elif self.cuvid_decoder is None:
            # an earlier recreation failed half way
            self._initialize(w, h, self.dims.wdst or w, self.dims.hdst or h)
        return 1

    def handle_picture_decode(self, pic):
        log.debug(f'decode picture index: {pic.CurrPicIdx}')
        if self.cuvid_decoder is None:
            raise DecodeError('no hardware decoder to decode picture with')
        try:
            with self.runtime.range('cuvid DecodePicture'):
                self.cuvid.decode_picture(self.cuvid_decoder, pic)
        except CUError as e:
            log.warning(f'Error {e} decoding frame')
            raise DecodeError(f'decoding picture failed: {e}') from e
        # must stay after the decode: decode() uses it to tell a picture was decoded
        self.dims.wsrc = pic.PicWidthInMbs * 16
        self.dims.hsrc = pic.FrameHeightInMbs * 16
        return 1

    def handle_display(self, info):
        log.debug(f'display picture index: {info.picture_index}')
        self.idx = info.picture_index
        return 1

    # ---- hardware decoder (re)creation ----

    def _initialize(self, iwidth, iheight, dstwidth, dstheight):
        """create the hardware decoder, and the RGB buffer if the output size changed

        Args:
            iwidth (int): width of the coded pictures
            iheight (int): height of the coded pictures
            dstwidth (int): width the user requested
            dstheight (int): height the user requested
        """
        assert iwidth > 0 and iheight > 0
        assert dstwidth > 0 and dstheight > 0
        assert self.cuvid_decoder is None

        self.dims.wi = iwidth
        self.dims.hi = iheight
        try:
            self.cuvid_decoder = self.cuvid.create_decoder(CODEC, (iwidth, iheight), (dstwidth, dstheight),
                                                           num_surfaces = NUM_DECODE_SURFACES)
        except CUError as e:
            log.error(f'decoder creation failed: {e}')
            raise DecodeError(f'decoder creation failed: {e}') from e
        self.initialized = True

        if (dstwidth, dstheight) != (self.dims.wdst, self.dims.hdst):
            if self.rgb:
                try:
                    self.runtime.free(self.rgb)
                except CUDAError as e:
                    log.error(f'Could not free internal RGB buffer: {e}')
                    raise AllocationFailure('could not free internal RGB buffer') from e
                self.rgb = 0
            # the conversion writes here when the user's buffer is host memory;
            # a plain copy then moves it to the user
            nb_rgb = dstwidth * dstheight * 3
            try:
                self.rgb = self.runtime.malloc(nb_rgb)
            except CUDAError as e:
                log.error(f'could not allocate temporary RGB buffer: {e}')
                self.rgb = 0
                raise AllocationFailure(f'could not allocate {nb_rgb}-byte RGB buffer') from e
            self.dims.wdst = dstwidth
            self.dims.hdst = dstheight

    def _resize(self, width, height, dstwidth, dstheight):
        log.debug(f'resizing decoder {self.dims} -> in={width}x{height} dst={dstwidth}x{dstheight}')
        if self.cuvid_decoder is not None:
            try:
                self.cuvid.destroy_decoder(self.cuvid_decoder)
            except CUError as e:
                log.warning(f'Error destroying decoder: {e}')
        self.cuvid_decoder = None
        # slots of the old decoder mean nothing to the new one
        self.idx = None
        self._initialize(width, height, dstwidth, dstheight)

    def _create_parser(self):
        # created lazily: it can be slow and eat a lot of resources
        try:
            return self.cuvid.create_parser(CODEC, self.handle_sequence, self.handle_picture_decode,
                                            self.handle_display, max_surfaces = NUM_DECODE_SURFACES,
                                            error_threshold = ERROR_THRESHOLD,
                                            max_display_delay = MAX_DISPLAY_DELAY)
        except CUError as e:
            log.error(f'failed creating video parser: {e}')
            raise DecodeError(f'failed creating video parser: {e}') from e

    # ---- decode ----

    def decode(self, packet, output, width, height, size = None):
        """decode one compressed unit into output as packed RGB

        The input size comes last and is optional, since a python buffer
        already knows its length; pass it to use only a prefix of packet.

        Args:
            packet: the compressed unit; host (buffer protocol) or device (__cuda_array_interface__)
            output: receives width*height*3 bytes; host or device
            width (int): width of the output image
            height (int): height of the output image, must be even
            size (int, optional): number of bytes of packet to use. Defaults to all of it.

        Raises:
            InvalidArgument: bad sizes or buffers, or packet carries no frame at all
            AllocationFailure: a host or device buffer could not be allocated
            CopyFailure: a host <-> device transfer failed
            DecodeError: cuvid or the conversion failed
        """
        if self.destroyed:
            raise ConfigurationError('decoder has been destroyed')
        source = locate(self.runtime, packet)
        if size is None:
            size = source.nbytes
        if size == 0:
            log.error('input buffer size is 0.')
            raise InvalidArgument('input buffer size is 0')
        if size > source.nbytes:
            log.error(f'input size {size} exceeds the {source.nbytes}-byte buffer')
            raise InvalidArgument(f'input size {size} exceeds buffer of {source.nbytes} bytes')
        if width == 0 or height == 0 or height & 1:
            log.error(f'invalid width or height {width}x{height}')
            raise InvalidArgument(f'invalid output size {width}x{height}')
        target = locate(self.runtime, output)
        if target.nbytes < width * height * 3 or not target.writable:
            log.error(f'output buffer {target} cannot hold a {width}x{height} RGB image')
            raise InvalidArgument(f'output buffer too small or read-only for {width}x{height}')

        if self.cuvid_parser is None:
            self.cuvid_parser = self._create_parser()

        # cuvid needs host memory
        srcbuf = self.staging.prepare(source, size)

        self.empty = False
        # mismatches already corrected in this call; with latency a held picture
        # of the old size can come out before the new one, so several may appear
        corrected = []
        waited = False
        while True:
            self._submit(srcbuf, size)
            d = self.dims
            if d.wsrc == 0 or d.hsrc == 0:
                # a frame of latency means cuvid doesn't always fire our callbacks.
                # submit the unit again, but only once
                if self.empty:
                    log.error('Input is just stream metadata!')
                    raise InvalidArgument('input is stream metadata only, no frame')
                self.empty = True
                log.debug('no picture decoded, resubmitting')
                continue
            self.empty = False

            # 4 cases: nothing changed; output size changed; stream size changed;
            # both changed. all but the first are: recreate, then resubmit
            if (d.wsrc, d.hsrc) != (d.wi, d.hi) or (d.wdst, d.hdst) != (width, height):
                mismatch = (d.wsrc, d.hsrc, width, height)
                if mismatch in corrected or len(corrected) >= MAX_RECREATIONS:
                    log.error(f'geometry did not settle: {d}, wanted {width}x{height}')
                    raise DecodeError(f'stream geometry did not settle within one unit: {d}')
                corrected.append(mismatch)
                self._resize(d.wsrc, d.hsrc, width, height)
                continue

            if self.idx is None:
                # decoded, but no frame reached the display queue yet
                if waited:
                    log.error('decoder never displayed a frame')
                    raise DecodeError('no frame became ready for display')
                waited = True
                log.debug('no frame displayed yet, resubmitting')
                continue
            break

        self._materialize(width, height, target)

    def _submit(self, srcbuf, size):
        # only a picture decoded during this submission counts
        self.dims.wsrc = 0
        self.dims.hsrc = 0
        try:
            with self.runtime.range('cuvid parse video data'):
                self.cuvid.parse_unit(self.cuvid_parser, srcbuf, size)
        except CUError as e:
            log.error(f'parsing video data failed: {e}')
            raise DecodeError(f'parsing video data failed: {e}') from e

    def _materialize(self, width, height, target):
        try:
            data, pitch = self.cuvid.map_frame(self.cuvid_decoder, self.idx)
        except CUError as e:
            log.error(f'Failed mapping frame: {e}')
            raise DecodeError(f'failed mapping frame {self.idx}: {e}') from e

        try:
            # the mapping is done by cuvid in the default stream, the conversion runs
            # in its own stream: make the conversion wait for the map
            try:
                self.runtime.event_record(self.ready, 0)
                self.runtime.stream_wait_event(self.converter.stream, self.ready)
            except CUDAError as e:
                log.error(f'could not synchronize streams via event: {e}')
                raise DecodeError(f'could not synchronize streams: {e}') from e

            with self.runtime.range('reorganize'):
                self._reorganize(data, width, height, target, pitch)
        finally:
            # unmap even if the conversion failed; its error is the one to report
            try:
                self.cuvid.unmap_frame(self.cuvid_decoder, data)
            except CUError as e:
                log.warning(f'Unmapping frame failed: {e}')

    def _reorganize(self, nv12, width, height, target, pitch):
        # convert straight into the user's buffer when it is device memory
        dstbuf = target.ptr if target.on_device else self.rgb
        try:
            self.converter.submit(nv12, width, height, dstbuf, pitch)
        except (CUDAError, RuntimeError) as e:
            log.error(f'reorganization kernel failed: {e}')
            raise DecodeError(f'color conversion failed: {e}') from e

        if not target.on_device:
            nb_rgb = self.dims.wdst * self.dims.hdst * 3
            try:
                self.runtime.memcpy_dtoh_async(target.ptr, dstbuf, nb_rgb, self.converter.stream)
            except CUDAError as e:
                log.error(f'async DtoH failed: {e}')
                raise CopyFailure(f'copy of {nb_rgb} bytes to host failed: {e}') from e

        try:
            self.converter.sync()
        except (CUDAError, RuntimeError) as e:
            log.error(f'reorganization sync failed: {e}')
            raise DecodeError(f'color conversion sync failed: {e}') from e

    # ---- encoder-only operations ----

    def encode(self, *args, **kwargs):
        log.error('Decoder cannot encode; create an encoder instead.')
        raise ConfigurationError('decoder cannot encode; create an encoder instead')

    def bitrate(self, rate):
        log.error('Bitrate is encoded into the stream; you can only change it on the encode side.')
        raise ConfigurationError('bitrate can only be changed on the encode side')

    # ---- lifecycle ----

    def destroy(self):
        """release everything the decoder holds.

        Failures are logged and do not stop the rest from being released.
        Calling it more than once is harmless.

        destroy() is called automatically when the decoder is garbage collected
        """
        if self.destroyed:
            return
        self.destroyed = True

        if self.cuvid_decoder is not None:
            try:
                self.cuvid.destroy_decoder(self.cuvid_decoder)
            except CUError as e:
                log.warning(f'Error destroying decoder: {e}')
            self.cuvid_decoder = None
        if self.cuvid_parser is not None:
            try:
                self.cuvid.destroy_parser(self.cuvid_parser)
            except CUError as e:
                log.warning(f'Error destroying parser: {e}')
            self.cuvid_parser = None
        if self.rgb:
            try:
                self.runtime.free(self.rgb)
            except CUDAError as e:
                log.warning(f'Error freeing decode temporary buffer: {e}')
            self.rgb = 0
        if self.converter is not None:
            try:
                self.converter.destroy()
            except (CUDAError, RuntimeError) as e:
                log.warning(f'Error destroying reorganization object: {e}')
            self.converter = None
        if self.ready is not None:
            try:
                self.runtime.event_destroy(self.ready)
            except CUDAError as e:
                log.warning(f'Error destroying sync event: {e}')
            self.ready = None
        self.staging.free()

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.destroy()

    def __del__(self):
        # __init__ may not have run to completion
        if hasattr(self, 'destroyed'):
            self.destroy()

def create_decoder(runtime = None, cuvid = None, converter = Nv12ToRgb, device = None,
                   max_width = MAX_WIDTH, max_height = MAX_HEIGHT):
    """create a decoder

    Args:
        runtime (CudaRuntime, optional): CUDA runtime to use. Defaults to CudaRuntime(device).
        cuvid (Cuvid, optional): hardware decoder engine. Defaults to Cuvid().
        converter (callable, optional): factory taking the device, returning the NV12 -> RGB
            conversion stage. Defaults to Nv12ToRgb.
        device (int, optional): CUDA device. Defaults to the current one.
        max_width (int, optional): streams wider than this get a warning. Defaults to MAX_WIDTH.
        max_height (int, optional): streams taller than this get a warning. Defaults to MAX_HEIGHT.

    Returns:
        Decoder: or None if CUDA, cuvid, the event or the conversion stage could not be set up
    """
    try:
        if runtime is None:
            runtime = CudaRuntime(device)
        if cuvid is None:
            cuvid = Cuvid()
        # make sure the runtime has initialized its implicit context
        runtime.device_synchronize()
    except (CUDAError, OSError) as e:
        # OSError: libcudart or libnvcuvid could not be loaded
        log.error(f'could not initialize CUDA: {e}')
        return None

    try:
        ready = runtime.event_create()
    except CUDAError as e:
        log.error(f'could not create sync event: {e}')
        return None

    try:
        reorg = converter(device)
    except (CUDAError, RuntimeError, AssertionError) as e:
        # torch raises AssertionError when built without CUDA
        log.error(f'could not create internal reorganization object: {e}')
        try:
            runtime.event_destroy(ready)
        except CUDAError as e:
            log.warning(f'Error destroying sync event: {e}')
        return None

    return Decoder(runtime, cuvid, ready, reorg, max_width = max_width, max_height = max_height)
