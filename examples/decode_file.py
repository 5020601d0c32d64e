import logging

import av
import numpy as np
from tqdm import tqdm

from nvpipe.decoder import create_decoder

logging.basicConfig(level=logging.WARNING)

def test(path, width, height):
    '''
    Decode a raw H.264 elementary stream (as written by the NvPipe encoder)
    into RGB frames of the requested size
    '''
    container = av.open(path, format='h264')
    stream = container.streams.video[0]

    decoder = create_decoder()
    if decoder is None:
        raise SystemExit('could not create decoder')

    rgb = np.empty(width * height * 3, dtype=np.uint8)
    with decoder:
        bar = tqdm(container.demux(stream))
        for packet in bar:
            if packet.size == 0:
                continue
            data = np.frombuffer(bytes(packet), dtype=np.uint8)
            decoder.decode(data, rgb, width, height)
            bar.set_description(f'mean {rgb.mean():.1f}')

if __name__ == '__main__':
    import sys
    path = sys.argv[1]
    width = int(sys.argv[2])
    height = int(sys.argv[3])
    test(path, width, height)
