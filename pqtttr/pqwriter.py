"""
Synthesis of PicoHarp T3 record streams from photon count images.

The count image is a cuboid `counts[x, y, dtime]`. Every image row becomes
one scan line framed by line start/stop markers. Each pixel gets a fixed
slot of `max_count_per_pixel + 2` sync periods in which all of its photons
are written, so decoding the stream with the line markers puts every photon
back into its pixel.

"""

import os
import time
import uuid
from dataclasses import dataclass

import numpy as np
from tqdm import tqdm

from . import __version__
from .errors import TimeRegression
from .header import PTU_RECORD_TYPES, encode_header, pt3_imaging_fields, write_pt3_header
from .records import DEFAULT_MARKERS, WRAPAROUND, MarkerBits
from .tags import bool_tag, datetime_tag, float_tag, int_tag, string_tag

SPECIAL_CHANNEL = 15
MAX_DTIME = 0xFFF

# Marker inputs written to ImgHdr_LineStart, ImgHdr_LineStop and ImgHdr_Frame
LINE_START_INPUT = 1
LINE_STOP_INPUT = 2
FRAME_INPUT = 3

DEFAULT_SYNC_RATE = 80 * 1000000  # Hz
DEFAULT_RESOLUTION = 96e-12  # s


def make_record(nsync, channel, marker, dtime):
    """Pack the fields of a PicoHarp T3 record into a 32-bit word."""
    return ((nsync & 0xFFFF) | ((dtime & 0xFFF) << 16) | ((channel & 0xF) << 28)
            | ((marker & 0xF) << 16))


def _as_cuboid(counts):
    counts = np.asarray(counts)
    if counts.ndim != 3:
        raise ValueError("Counts must be a 3D array (x, y, lifetime bin), got shape %s"
                         % (counts.shape,))
    if not np.issubdtype(counts.dtype, np.integer):
        raise ValueError("Counts must be integers, got %s" % counts.dtype)
    if counts.size and counts.min() < 0:
        raise ValueError("Counts must not be negative")
    if counts.shape[2] > MAX_DTIME + 1:
        raise ValueError("At most %d lifetime bins fit into a PicoHarp T3 record"
                         % (MAX_DTIME + 1))
    return counts


@dataclass(frozen=True)
class ScanGeometry:
    """Size of the scanned image and of the sync slot given to each pixel."""

    width: int
    height: int
    max_count_per_pixel: int

    def __post_init__(self):
        if self.width < 1 or self.height < 1:
            raise ValueError("Image must be at least 1x1 pixels, got %dx%d"
                             % (self.width, self.height))
        if self.max_count_per_pixel < 0:
            raise ValueError("max_count_per_pixel must not be negative")

    @classmethod
    def from_counts(cls, counts):
        counts = _as_cuboid(counts)
        width, height, _ = counts.shape
        max_count = int(counts.sum(axis=2).max()) if counts.size else 0
        return cls(width, height, max_count)

    @property
    def pixel_slot_width(self):
        return self.max_count_per_pixel + 2

    @property
    def sync_count_per_line(self):
        return self.pixel_slot_width * self.width

    @property
    def estimated_wraparounds(self):
        return (self.sync_count_per_line * self.height) // WRAPAROUND


def estimate_record_count(geometry, total_photons):
    """Estimate of the number of records, computed before encoding.

    Photons, a line start and a line stop per row, the wraparounds and the
    final frame marker. It is lower than the real count by at most one,
    when the tick before the frame marker crosses a wraparound.
    """
    return int(total_photons) + 2 * geometry.height + geometry.estimated_wraparounds + 1


class ScanEncoder:
    """
    Walks a count cuboid and produces PicoHarp T3 records.

    Attributes:
        geometry (ScanGeometry): image size and pixel slot width.
        markers (MarkerBits): marker codes for line start, line stop and frame.
        channel (int): detector channel written into photon records.
        nsync (int): current local sync counter, always below `WRAPAROUND`.
        ofltime (int): sync time accumulated by the wraparound records.
        num_records (int): records produced since the last `reset`.
        num_wraparounds (int): wraparound records produced since the last `reset`.
    """

    def __init__(self, geometry, markers=DEFAULT_MARKERS, channel=1):
        if not 0 <= channel < SPECIAL_CHANNEL:
            raise ValueError("Channel must be in 0..14, got %d" % channel)
        self.geometry = geometry
        self.markers = markers
        self.channel = channel
        self.reset()

    def reset(self):
        self.nsync = 0
        self.ofltime = 0
        self.num_records = 0
        self.num_wraparounds = 0
        self._pending = []

    @property
    def global_time(self):
        return self.ofltime + self.nsync

    def _emit(self, record):
        self._pending.append(record)
        self.num_records += 1

    def flush(self):
        """Return the records produced since the last flush as a uint32 array."""
        records = np.array(self._pending, dtype=np.uint32)
        self._pending = []
        return records

    def increase_nsync(self, inc):
        """Advance the local sync counter by `inc`, writing wraparounds on overflow."""
        if inc < 0:
            raise TimeRegression(self.global_time, self.global_time + inc)
        self.nsync += inc
        if self.nsync >= WRAPAROUND:
            for _ in range(self.nsync // WRAPAROUND):
                self._emit(make_record(0, SPECIAL_CHANNEL, 0, 0))
                self.ofltime += WRAPAROUND
                self.num_wraparounds += 1
            self.nsync = self.nsync % WRAPAROUND

    def advance_to(self, target):
        """Move the absolute sync time forward to `target`."""
        current = self.global_time
        if target < current:
            raise TimeRegression(current, target)
        if target > current:
            self.increase_nsync(target - current)

    def write_photons(self, dtimes):
        """Write one photon record for each entry of `dtimes` at the current sync."""
        dtimes = np.asarray(dtimes, dtype=np.int64)
        records = (self.nsync | (dtimes << 16) | (self.channel << 28)).astype(np.uint32)
        self._pending.extend(records.tolist())
        self.num_records += records.size

    def write_marker(self, code):
        self._emit(make_record(self.nsync, SPECIAL_CHANNEL, code, 0))

    def iter_rows(self, counts, progress_cb=None, progress=True):
        """Encode `counts` and yield the records of each image row.

        The chunk of the last row also holds the frame marker. Geometry and
        counters are checked as the pass goes: asking for a sync time
        earlier than the current one raises `TimeRegression`.

        :param counts: Integer array (x, y, lifetime bin) matching the geometry
        :param progress_cb: Callback function which is called with progress as a value between 0 and 1
        :param progress: Show a tqdm progress bar
        """
        counts = _as_cuboid(counts)
        geometry = self.geometry
        if counts.shape[:2] != (geometry.width, geometry.height):
            raise ValueError("Counts of shape %s do not match a %dx%d geometry"
                             % (counts.shape, geometry.width, geometry.height))
        self.reset()
        slot = geometry.pixel_slot_width
        per_line = geometry.sync_count_per_line
        bins = np.arange(counts.shape[2])

        for y in (pbar := tqdm(range(geometry.height), disable=not progress)):
            pbar.set_description("Encoding lines")
            self.write_marker(self.markers.line_start)
            for x in range(geometry.width):
                # photons sit one sync after the start of the pixel slot
                self.increase_nsync(1)
                self.write_photons(np.repeat(bins, counts[x, y].astype(np.int64)))
                if x < geometry.width - 1:
                    self.advance_to(y * per_line + (x + 1) * slot)
            self.advance_to((y + 1) * per_line)
            self.write_marker(self.markers.line_stop)
            if y == geometry.height - 1:
                self.increase_nsync(1)
                self.write_marker(self.markers.frame)
            yield self.flush()
            if progress_cb:
                progress_cb((y + 1) / geometry.height)

    def encode(self, counts, progress_cb=None, progress=True):
        """Encode `counts` into a single uint32 array of records."""
        chunks = list(self.iter_rows(counts, progress_cb, progress))
        return np.concatenate(chunks)

    def count_records(self, counts):
        """Dry run of the encoding pass, returning the exact number of records."""
        for _ in self.iter_rows(counts, progress=False):
            pass
        num_records = self.num_records
        self.reset()
        return num_records


def ptu_header_tags(geometry, num_records, sync_rate=DEFAULT_SYNC_RATE,
                    resolution=DEFAULT_RESOLUTION, pixel_resolution=1.0,
                    creator_name='pqtttr', creator_version=__version__, extra_tags=()):
    """Tags describing an encoded scan, in the order they are written.

    :param geometry: ScanGeometry of the image
    :param num_records: Value of TTResult_NumberOfRecords
    :param sync_rate: Laser repetition rate in Hz
    :param resolution: TCSPC bin width in seconds
    :param pixel_resolution: Pixel size in um
    :param extra_tags: Additional Tag objects, written just before Header_End
    """
    return [
        string_tag('File_GUID', '{%s}' % uuid.uuid4()),
        datetime_tag('File_CreatingTime', time.time()),
        int_tag('Measurement_Mode', 3),
        int_tag('Measurement_SubMode', 3),
        string_tag('CreatorSW_Name', creator_name),
        string_tag('CreatorSW_Version', creator_version),
        int_tag('ImgHdr_Dimensions', 3),
        int_tag('ImgHdr_Ident', 3),
        int_tag('ImgHdr_PixX', geometry.width),
        int_tag('ImgHdr_PixY', geometry.height),
        float_tag('ImgHdr_PixResol', pixel_resolution),
        int_tag('ImgHdr_LineStart', LINE_START_INPUT),
        int_tag('ImgHdr_LineStop', LINE_STOP_INPUT),
        int_tag('ImgHdr_Frame', FRAME_INPUT),
        bool_tag('ImgHdr_BiDirect', False),
        int_tag('ImgHdr_SinCorrection', 0),
        int_tag('MeasDesc_BinningFactor', 1),
        float_tag('MeasDesc_Resolution', resolution),
        int_tag('TTResult_SyncRate', sync_rate),
        float_tag('MeasDesc_GlobalResolution', 1. / sync_rate),
        int_tag('TTResult_NumberOfRecords', num_records),
        int_tag('TTResultFormat_TTTRRecType', PTU_RECORD_TYPES['rtPicoHarpT3']),
        int_tag('TTResultFormat_BitsPerRecord', 32),
        *extra_tags,
    ]


def _prepare_ptu(counts, channel, settings):
    counts = _as_cuboid(counts)
    geometry = ScanGeometry.from_counts(counts)
    encoder = ScanEncoder(geometry, MarkerBits.from_positions(
        LINE_START_INPUT, LINE_STOP_INPUT, FRAME_INPUT), channel)
    num_records = encoder.count_records(counts)
    header = encode_header(ptu_header_tags(geometry, num_records, **settings))
    return counts, encoder, header, num_records


def encode_ptu(counts, channel=1, progress_cb=None, progress=True, **settings):
    """Encode a count cuboid into the bytes of a complete .ptu file.

    :param counts: Integer array of dimension (x, y, lifetime bin)
    :param channel: Detector channel of the photons
    :param settings: Keyword arguments of `ptu_header_tags`
    :return data: bytes of the file
    """
    counts, encoder, header, _ = _prepare_ptu(counts, channel, settings)
    parts = [header]
    parts.extend(chunk.astype('<u4').tobytes()
                 for chunk in encoder.iter_rows(counts, progress_cb, progress))
    return b''.join(parts)


def _write_records(filename, header_writer, encoder, counts, progress_cb, progress):
    try:
        with open(filename, 'wb') as f:
            header_writer(f)
            for chunk in encoder.iter_rows(counts, progress_cb, progress):
                f.write(chunk.astype('<u4').tobytes())
    except BaseException:
        # never leave a partially written file behind
        if os.path.exists(filename):
            os.remove(filename)
        raise


def write_ptu(counts, filename, channel=1, progress_cb=None, progress=True, **settings):
    """Write a photon count cuboid to a .ptu file

    :param counts: Integer array of dimension (x, y, lifetime bin)
    :param filename: Output filename
    :param channel: Detector channel of the photons
    :param progress_cb: Callback function which is called with progress as a value between 0 and 1
    :param settings: Keyword arguments of `ptu_header_tags` (sync_rate, resolution, ...)
    :return num_records: number of records written
    """
    counts, encoder, header, num_records = _prepare_ptu(counts, channel, settings)
    _write_records(filename, lambda f: f.write(header), encoder, counts, progress_cb, progress)
    return num_records


def write_pt3(meta, counts, filename, channel=1, progress_cb=None, progress=True):
    """Write a photon count cuboid to a .pt3 file

    :param meta: Must be the same meta dictionary from pqreader.read_pt3 function
    :param counts: Integer array of dimension (x, y, lifetime bin)
    :param filename: Output filename
    :return num_records: number of records written
    """
    counts = _as_cuboid(counts)
    fields = pt3_imaging_fields(meta['imghdr'])
    markers = MarkerBits.from_positions(fields['LineStart'], fields['LineStop'], fields['Frame'])
    geometry = ScanGeometry.from_counts(counts)
    encoder = ScanEncoder(geometry, markers, channel)
    num_records = encoder.count_records(counts)

    ttmode = np.array(meta['ttmode'], copy=True)
    ttmode['nRecords'] = num_records
    imghdr = np.array(meta['imghdr'], dtype='<i4', copy=True)
    imghdr[6] = geometry.width
    imghdr[7] = geometry.height
    new_meta = dict(meta, ttmode=ttmode, imghdr=imghdr)

    _write_records(filename, lambda f: write_pt3_header(f, new_meta), encoder, counts,
                   progress_cb, progress)
    return num_records
