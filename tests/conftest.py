import numpy as np
import pytest

from pqtttr import header


@pytest.fixture
def pt3_meta():
    """Minimal header blocks of a 2 x 3 pixel PT3 scan."""
    meta = {key: np.zeros(count, dtype=dtype) for key, dtype, count in header._pt3_blocks}
    meta['header']['Ident'] = b'PicoHarp 300'
    meta['header']['FormatVersion'] = b'2.0'
    meta['header']['BitsPerRecord'] = 32
    meta['header']['MeasurementMode'] = 3
    meta['hardware']['Resolution'] = 0.004  # ns
    meta['ttmode']['InpRate0'] = 40000000
    meta['ttmode']['ImgHdrSize'] = 8
    # Dimensions, Ident, Frame, LineStart, LineStop, Pattern, PixX, PixY
    meta['imghdr'] = np.array([3, 1, 3, 1, 2, 0, 2, 3], dtype='<i4')
    return meta
