#!/usr/bin/env python

"""Tests for `pqtttr.pqwriter`."""

from collections import Counter

import numpy as np
import pytest

from pqtttr import events_to_counts, load_ptfile
from pqtttr.errors import TimeRegression
from pqtttr.header import RecordFormat, decode_header
from pqtttr.pqwriter import (ScanEncoder, ScanGeometry, encode_ptu, estimate_record_count,
                             make_record, write_pt3, write_ptu)
from pqtttr.records import (DEFAULT_MARKERS, WRAPAROUND, Marker, MarkerKind, Photon,
                            decode_t3records, iter_events)


@pytest.fixture
def small_counts():
    # two pixels on one line, three lifetime bins
    return np.array([[[2, 0, 1]], [[0, 1, 0]]], dtype=np.uint16)


def random_counts(shape, high, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, high, size=shape).astype(np.uint16)


def test_make_record():
    assert make_record(0, 15, 0, 0) == 0xF0000000
    assert make_record(0x1234, 1, 0, 0xABC) == 0x1ABC1234
    assert make_record(7, 15, 4, 0) == 0xF0040007


def test_geometry(small_counts):
    geometry = ScanGeometry.from_counts(small_counts)
    assert geometry == ScanGeometry(2, 1, 3)
    assert geometry.pixel_slot_width == 5
    assert geometry.sync_count_per_line == 10
    assert estimate_record_count(geometry, 4) == 4 + 2 + 0 + 1
    with pytest.raises(ValueError):
        ScanGeometry(0, 1, 1)


def test_small_scan(small_counts):
    encoder = ScanEncoder(ScanGeometry.from_counts(small_counts))
    records = encoder.encode(small_counts, progress=False)
    assert records.dtype == np.uint32
    assert len(records) == encoder.num_records == 7
    events = list(iter_events(records, RecordFormat.PicoHarpT3))

    photons = Counter((e.channel, e.dtime) for e in events if isinstance(e, Photon))
    assert photons == Counter({(1, 0): 2, (1, 2): 1, (1, 1): 1})
    markers = [e for e in events if isinstance(e, Marker)]
    assert [m.kind for m in markers] == [MarkerKind.LineStart, MarkerKind.LineStop,
                                         MarkerKind.Frame]
    assert [m.sync for m in markers] == [0, 10, 11]
    assert [e.sync for e in events if isinstance(e, Photon)] == [1, 1, 1, 6]


@pytest.mark.parametrize('shape, high', [
    ((1, 1, 1), 3),
    ((4, 3, 8), 5),
    ((40, 40, 32), 4),  # crosses wraparounds
    ((7, 40, 16), 30),
])
def test_roundtrip_counts(shape, high):
    counts = random_counts(shape, high)
    geometry = ScanGeometry.from_counts(counts)
    encoder = ScanEncoder(geometry)
    records = encoder.encode(counts, progress=False)
    # the frame marker sits one sync after the last line
    assert encoder.num_wraparounds - geometry.estimated_wraparounds in (0, 1)
    decoded = decode_t3records(records, RecordFormat.PicoHarpT3)
    result = events_to_counts(decoded, shape[0], shape[1], shape[2], DEFAULT_MARKERS,
                              progress=False)
    np.testing.assert_array_equal(result, counts)


def test_empty_image():
    counts = np.zeros((3, 2, 4), dtype=np.uint8)
    encoder = ScanEncoder(ScanGeometry.from_counts(counts))
    records = encoder.encode(counts, progress=False)
    # line start and stop per row and the frame marker
    assert len(records) == 2 * 2 + 1


def test_count_records_is_exact():
    counts = random_counts((20, 20, 16), 6, seed=3)
    geometry = ScanGeometry.from_counts(counts)
    encoder = ScanEncoder(geometry)
    num_records = encoder.count_records(counts)
    assert encoder.num_records == 0
    assert len(encoder.encode(counts, progress=False)) == num_records
    assert num_records <= estimate_record_count(geometry, counts.sum()) + 1


def test_advance_backwards():
    encoder = ScanEncoder(ScanGeometry(2, 2, 1))
    encoder.advance_to(70000)
    assert encoder.num_wraparounds == 1
    assert encoder.global_time == 70000
    with pytest.raises(TimeRegression):
        encoder.advance_to(69999)
    with pytest.raises(TimeRegression):
        encoder.increase_nsync(-1)


def test_invalid_counts():
    encoder = ScanEncoder(ScanGeometry(2, 2, 1))
    with pytest.raises(ValueError):
        encoder.encode(np.zeros((2, 2)), progress=False)
    with pytest.raises(ValueError):
        encoder.encode(np.zeros((3, 2, 1), dtype=int), progress=False)
    with pytest.raises(ValueError):
        ScanGeometry.from_counts(np.zeros((2, 2, 4097), dtype=int))
    with pytest.raises(ValueError):
        ScanEncoder(ScanGeometry(2, 2, 1), channel=15)


def test_encode_ptu(small_counts):
    data = encode_ptu(small_counts, progress=False, sync_rate=40000000, resolution=16e-12)
    header, offset = decode_header(data)
    assert header['TTResult_NumberOfRecords'] == 7
    assert header['ImgHdr_PixX'] == 2
    assert header['ImgHdr_PixY'] == 1
    assert header['MeasDesc_GlobalResolution'] == pytest.approx(25e-9)
    assert header['MeasDesc_Resolution'] == 16e-12
    assert header.record_format == RecordFormat.PicoHarpT3
    assert len(data) - offset == 7 * 4


def test_write_ptu_roundtrip(tmp_path):
    counts = random_counts((8, 6, 12), 4, seed=1)
    filename = str(tmp_path / 'scan.ptu')
    progress = []
    num_records = write_ptu(counts, filename, progress_cb=progress.append, progress=False)
    assert progress[-1] == 1
    assert len(progress) == 6
    result, meta = load_ptfile(filename, n_bins=12, progress=False)
    assert meta['header']['TTResult_NumberOfRecords'] == num_records
    np.testing.assert_array_equal(result, counts)


def test_write_ptu_removes_partial_file(tmp_path):
    counts = random_counts((4, 4, 4), 3)
    filename = tmp_path / 'scan.ptu'

    def abort(progress):
        if progress > 0.5:
            raise RuntimeError('cancelled')

    with pytest.raises(RuntimeError):
        write_ptu(counts, str(filename), progress_cb=abort, progress=False)
    assert not filename.exists()


def test_write_pt3_roundtrip(tmp_path, pt3_meta):
    counts = random_counts((5, 4, 10), 6, seed=2)
    filename = str(tmp_path / 'scan.pt3')
    num_records = write_pt3(pt3_meta, counts, filename, progress=False)
    result, meta = load_ptfile(filename, n_bins=10, progress=False)
    assert int(meta['ttmode']['nRecords'][0]) == num_records
    assert (meta['width'], meta['height']) == (5, 4)
    np.testing.assert_array_equal(result, counts)


def test_intensity_image(small_counts):
    from pqtttr.image import intensity_image

    np.testing.assert_array_equal(intensity_image(small_counts), [[3], [1]])


def test_estimate_one_short_when_frame_tick_wraps():
    # 255 lines of 257 syncs end one sync before the first wraparound
    counts = np.zeros((1, 255, 1), dtype=np.uint16)
    counts[0, 0, 0] = 255
    geometry = ScanGeometry.from_counts(counts)
    assert geometry.sync_count_per_line * geometry.height == WRAPAROUND - 1
    encoder = ScanEncoder(geometry)
    records = encoder.encode(counts, progress=False)
    assert encoder.num_wraparounds == 1
    assert len(records) == estimate_record_count(geometry, counts.sum()) + 1
    assert records[-1] == make_record(0, 15, DEFAULT_MARKERS.frame, 0)
