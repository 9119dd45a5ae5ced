#!/usr/bin/env python

"""Tests for `pqtttr.pqreader`."""

import numpy as np
import pytest

from pqtttr import iter_ptu_events, load_ptfile, read_ptu
from pqtttr.errors import (NotAnImagingFile, T2ModeWarning, TimeRegression, TruncatedRecordsWarning,
                           TruncatedStream)
from pqtttr.header import PTU_RECORD_TYPES, encode_header
from pqtttr.pqreader import load_ptu
from pqtttr.pqwriter import encode_ptu, make_record
from pqtttr.records import Marker, Photon
from pqtttr.tags import int_tag


def write_file(path, tags, records):
    data = encode_header(tags) + np.asarray(records, dtype='<u4').tobytes()
    path.write_bytes(data)
    return str(path)


@pytest.fixture
def scan_file(tmp_path):
    counts = np.array([[[1, 2]], [[0, 1]], [[3, 0]]], dtype=np.uint8)
    path = tmp_path / 'scan.ptu'
    path.write_bytes(encode_ptu(counts, progress=False))
    return str(path), counts


def test_read_ptu(scan_file):
    filename, _ = scan_file
    records, header = read_ptu(filename)
    assert records.dtype == np.dtype('<u4')
    assert records.size == header['TTResult_NumberOfRecords']
    assert header['CreatorSW_Name'] == 'pqtttr'


def test_iter_ptu_events(scan_file):
    filename, counts = scan_file
    events = list(iter_ptu_events(filename))
    assert sum(isinstance(e, Photon) for e in events) == counts.sum()
    assert sum(isinstance(e, Marker) for e in events) == 3


def test_load_ptfile(scan_file):
    filename, counts = scan_file
    result, meta = load_ptfile(filename, progress=False)
    assert result.shape == counts.shape
    np.testing.assert_array_equal(result, counts)
    assert meta['record_type'] == 'rtPicoHarpT3'
    assert meta['timestamps_unit'] == pytest.approx(12.5e-9)


def test_load_ptfile_channel_filter(scan_file):
    filename, counts = scan_file
    result, _ = load_ptfile(filename, channel=2, progress=False)
    assert result.sum() == 0


def test_load_ptfile_extension(tmp_path):
    with pytest.raises(ValueError):
        load_ptfile(str(tmp_path / 'scan.spc'))


def test_truncated_records(tmp_path):
    tags = [int_tag('TTResultFormat_TTTRRecType', PTU_RECORD_TYPES['rtPicoHarpT3']),
            int_tag('TTResult_NumberOfRecords', 10)]
    records = [make_record(5, 1, 0, 3), make_record(6, 1, 0, 4)]
    filename = write_file(tmp_path / 'short.ptu', tags, records)
    with pytest.warns(TruncatedRecordsWarning):
        read, _ = read_ptu(filename)
    assert list(read) == records


def test_t2_file_has_no_events(tmp_path):
    tags = [int_tag('TTResultFormat_TTTRRecType', PTU_RECORD_TYPES['rtHydraHarpT2']),
            int_tag('TTResult_NumberOfRecords', 1)]
    filename = write_file(tmp_path / 't2.ptu', tags, [0x12345678])
    with pytest.warns(T2ModeWarning):
        assert list(iter_ptu_events(filename)) == []
    with pytest.warns(T2ModeWarning):
        decoded, meta = load_ptu(filename)
    assert decoded['sync'].size == 0
    assert meta['record_type'] is None


def test_not_imaging(tmp_path):
    tags = [int_tag('TTResultFormat_TTTRRecType', PTU_RECORD_TYPES['rtPicoHarpT3'])]
    filename = write_file(tmp_path / 'point.ptu', tags, [make_record(5, 1, 0, 3)])
    with pytest.raises(NotAnImagingFile):
        load_ptfile(filename)


def test_record_cut_in_half(tmp_path):
    counts = np.array([[[1, 2]], [[0, 1]]], dtype=np.uint8)
    path = tmp_path / 'cut.ptu'
    path.write_bytes(encode_ptu(counts, progress=False)[:-2])
    with pytest.raises(TruncatedStream):
        read_ptu(str(path))
    with pytest.raises(TruncatedStream):
        load_ptfile(str(path), progress=False)


def scan_tags():
    return [int_tag('ImgHdr_PixX', 3), int_tag('ImgHdr_PixY', 1),
            int_tag('TTResultFormat_TTTRRecType', PTU_RECORD_TYPES['rtPicoHarpT3'])]


def test_load_rejects_time_regression(tmp_path):
    # 3 x 1 scan with one photon per pixel; the last photon jumps back to sync 0
    records = [make_record(0, 15, 1, 0),
               make_record(1, 1, 0, 0),
               make_record(4, 1, 0, 0),
               make_record(0, 1, 0, 0),
               make_record(9, 15, 2, 0),
               make_record(10, 15, 4, 0)]
    filename = write_file(tmp_path / 'backwards.ptu', scan_tags(), records)
    with pytest.raises(TimeRegression):
        load_ptfile(filename, progress=False)
    with pytest.raises(TimeRegression):
        list(iter_ptu_events(filename))
    counts, _ = load_ptfile(filename, strict=False, progress=False)
    # the late photon falls back into the first pixel
    np.testing.assert_array_equal(counts[:, 0, 0], [2, 1, 0])


def test_header_lookup_with_foreign_keys(scan_file):
    filename, _ = scan_file
    _, header = read_ptu(filename)
    assert header.get(5) is None
    assert 5 not in header
    assert header.get(('ImgHdr_PixX', -1)) == 3
