"""
This module contains functions to load and decode files from PicoQuant
hardware.

"""

import os
import warnings

import numpy as np

from .errors import TruncatedRecordsWarning, TruncatedStream, UnsupportedRecordType
from .header import RecordFormat, decode_header, pt3_imaging_fields, read_pt3_header
from .image import events_to_counts
from .records import MarkerBits, decode_t3records, iter_events


def _frombuffer_records(s, declared, offset=0):
    available, partial = divmod(len(s) - offset, 4)
    if declared is None:
        declared = available
    if declared > available:
        if partial:
            raise TruncatedStream("File ends inside record %d of %d"
                                  % (available + 1, declared))
        warnings.warn("Header declares %d records but only %d are present"
                      % (declared, available), TruncatedRecordsWarning, stacklevel=3)
    # A view of the t3records as a numpy array (no new memory is allocated)
    return np.frombuffer(s, dtype='<u4', count=min(declared, available), offset=offset)


def read_ptu(filename):
    """Read the header and the raw t3 or t2 records from a PTU file.

    Records are read until the end of the file or until the number given
    by `TTResult_NumberOfRecords` is reached. A file that ends inside a
    record raises `TruncatedStream`.

    Returns:
        A tuple `(records, header)` with the uint32 records and the
        `HeaderTable`.
    """
    # All the info about the PTU format has been inferred from PicoQuant demo:
    # https://github.com/PicoQuant/PicoQuant-Time-Tagged-File-Format-Demos/blob/master/PTU/C/ptudemo.cc
    with open(filename, 'rb') as f:
        s = f.read()
    header, offset = decode_header(s)

    bits = header.get('TTResultFormat_BitsPerRecord', 32)
    if bits != 32:
        raise UnsupportedRecordType(header.get('TTResultFormat_TTTRRecType', 0),
                                    '%d-bit records' % bits)
    records = _frombuffer_records(s, header.get('TTResult_NumberOfRecords'), offset)
    return records, header


def read_pt3(filename):
    """Load raw t3 records and metadata from a PT3 file.
    """
    with open(filename, 'rb') as f:
        meta = read_pt3_header(f)
        s = f.read()
    records = _frombuffer_records(s, int(meta['ttmode']['nRecords'][0]))
    return records, meta


def _pt3_markers(meta):
    fields = pt3_imaging_fields(meta['imghdr'])
    return MarkerBits.from_positions(fields['LineStart'], fields['LineStop'], fields['Frame'])


def iter_ptu_events(filename, strict=True):
    """Iterate over the photon and marker events of a PTU file.

    T2 files are recognised with a warning and produce no events.
    """
    records, header = read_ptu(filename)
    fmt = header.record_format
    if fmt is None:
        return
    yield from iter_events(records, fmt, MarkerBits.from_header(header), strict=strict)


def iter_pt3_events(filename, strict=True):
    """Iterate over the photon and marker events of a PT3 file."""
    records, meta = read_pt3(filename)
    yield from iter_events(records, RecordFormat.PicoHarpT3, _pt3_markers(meta), strict=strict)


def load_ptu(filename, strict=True):
    """Load data from a PicoQuant .ptu file.

    Returns:
        A tuple `(decoded, meta)`. `decoded` is the dict of arrays returned
        by :func:`records.decode_t3records` (empty for T2 files). `meta`
        has the keys 'timestamps_unit', 'nanotimes_unit', 'record_type',
        'width', 'height', 'markers' and 'header'.
    """
    records, header = read_ptu(filename)
    fmt = header.record_format
    if fmt is None:
        decoded = decode_t3records(records[:0], RecordFormat.PicoHarpT3)
    else:
        decoded = decode_t3records(records, fmt, strict)
    meta = {
        'timestamps_unit': header.get('MeasDesc_GlobalResolution'),
        'nanotimes_unit': header.get('MeasDesc_Resolution'),
        'record_type': fmt.record_type if fmt is not None else None,
        'width': header.get('ImgHdr_PixX'),
        'height': header.get('ImgHdr_PixY'),
        'markers': MarkerBits.from_header(header),
        'header': header}
    return decoded, meta


def load_pt3(filename, strict=True):
    """Load data from a PicoQuant .pt3 file.

    Returns:
        A tuple `(decoded, meta)` like :func:`load_ptu`. `meta` also holds
        the raw header blocks returned by :func:`header.read_pt3_header`.
    """
    records, meta = read_pt3(filename)
    decoded = decode_t3records(records, RecordFormat.PicoHarpT3, strict)
    fields = pt3_imaging_fields(meta['imghdr'])
    meta.update({'timestamps_unit': 1. / float(meta['ttmode']['InpRate0'][0]),
                 'nanotimes_unit': 1e-9 * float(meta['hardware']['Resolution'][0]),
                 'record_type': RecordFormat.PicoHarpT3.record_type,
                 'width': fields['PixX'],
                 'height': fields['PixY'],
                 'markers': _pt3_markers(meta)})
    return decoded, meta


def load_ptfile(filename, n_bins=None, channel=None, strict=True, progress=True):
    '''Load a .ptu or .pt3 scan into a photon count cuboid

    :param filename: Name of file to load
    :param n_bins: Number of lifetime bins, by default the largest photon dtime + 1
    :param channel: Only count photons of this detector channel, all when None
    :param strict: Raise TimeRegression if the sync time of the events decreases
    :param progress: Show a progress bar while binning
    :return counts: numpy array of size (num_pixel_X, num_pixel_Y, n_bins)
    :return meta: metadata dictionary
    '''
    name, ext = os.path.splitext(filename)
    ext = ext.lower()
    if ext == ".ptu":
        decoded, meta = load_ptu(filename, strict)
        meta['header'].require_imaging()
    elif ext == ".pt3":
        decoded, meta = load_pt3(filename, strict)
    else:
        raise ValueError(f'format of {ext} is not supported!')
    counts = events_to_counts(decoded, int(meta['width']), int(meta['height']), n_bins,
                              meta['markers'], channel, progress)
    return counts, meta
