"""
Decoding of the 32-bit T3 records stored after the file header.

PicoHarp T3 records have these fields (in little-endian order)::

    | channel (4) | dtime (12) | nsync (16) |
      MSB                              LSB

HydraHarp T3 records (V1 and V2) have these fields::

    | special (1) | channel (6) | dtime (15) | nsync (10) |
      MSB                                          LSB

`nsync` counts sync pulses and wraps around. The decoders keep the
accumulated overflow in an `OverflowState`, so the global sync time of an
event is `ofltime + nsync`.

"""

import warnings
from enum import Enum
from typing import NamedTuple

import numpy as np

from .errors import RecordWarning, TimeRegression
from .header import RecordFormat

WRAPAROUND = 65536  # PicoHarp T3
T3WRAPAROUND = 1024  # HydraHarp T3


class MarkerKind(Enum):
    LineStart = 'line_start'
    LineStop = 'line_stop'
    Frame = 'frame'
    Other = 'other'


class Photon(NamedTuple):
    channel: int
    dtime: int
    sync: int


class Marker(NamedTuple):
    kind: MarkerKind
    raw: int
    sync: int


class MarkerBits(NamedTuple):
    """Marker codes of the scan line and frame signals."""

    line_start: int = 1
    line_stop: int = 2
    frame: int = 4

    @classmethod
    def from_positions(cls, line_start=1, line_stop=2, frame=3):
        """Build the codes from the 1-based marker inputs stored in file headers."""
        return cls(2 ** (line_start - 1), 2 ** (line_stop - 1), 2 ** (frame - 1))

    @classmethod
    def from_header(cls, header):
        return cls.from_positions(header.get('ImgHdr_LineStart', 1),
                                  header.get('ImgHdr_LineStop', 2),
                                  header.get('ImgHdr_Frame', 3))

    def classify(self, code):
        if code == self.line_start:
            return MarkerKind.LineStart
        if code == self.line_stop:
            return MarkerKind.LineStop
        if code == self.frame:
            return MarkerKind.Frame
        return MarkerKind.Other


DEFAULT_MARKERS = MarkerBits()


class OverflowState:
    """Overflow accumulator of one decoding pass."""

    __slots__ = ('ofltime',)

    def __init__(self, ofltime=0):
        self.ofltime = ofltime

    def add(self, amount):
        if amount < 0:
            raise TimeRegression(self.ofltime, self.ofltime + amount)
        self.ofltime += amount

    def __repr__(self):
        return 'OverflowState(ofltime=%d)' % self.ofltime


class _RecordDecoder:

    """
    Base class for record decoders.
    """

    record_format = None

    def decode(self, raw, state, markers=DEFAULT_MARKERS):
        """
        Decodes a single record.

        :param raw: The 32-bit record as an int.
        :param state: `OverflowState` of the current pass, updated in place.
        :param markers: `MarkerBits` used to classify marker records.
        :return event: A `Photon` or `Marker`, or None for overflow records.
        """
        raise NotImplementedError("decode method not implemented")


class PicoHarpT3Decoder(_RecordDecoder):

    record_format = RecordFormat.PicoHarpT3

    def decode(self, raw, state, markers=DEFAULT_MARKERS):
        nsync = raw & 0xFFFF
        dtime = (raw >> 16) & 0xFFF
        channel = (raw >> 28) & 0xF
        if channel == 15:
            code = (raw >> 16) & 0xF
            # marker code 0 (or dtime 0) is an overflow
            if code == 0 or dtime == 0:
                state.add(WRAPAROUND)
                return None
            return Marker(markers.classify(code), code, state.ofltime + nsync)
        return Photon(channel, dtime, state.ofltime + nsync)


class HydraHarpT3Decoder(_RecordDecoder):
    """
    Decoder of HydraHarp T3 records.

    Overflow records (special bit set, channel 63) of V1 files always mean
    a single overflow. In V2 files nsync holds the number of overflows,
    where 0 still counts as one.
    """

    def __init__(self, v2=True):
        self.v2 = v2
        self.record_format = RecordFormat.HydraHarpT3V2 if v2 else RecordFormat.HydraHarpT3V1

    def decode(self, raw, state, markers=DEFAULT_MARKERS):
        nsync = raw & 0x3FF
        dtime = (raw >> 10) & 0x7FFF
        channel = (raw >> 25) & 0x3F
        special = (raw >> 31) & 0x1
        if special == 0:
            return Photon(channel + 1, dtime, state.ofltime + nsync)
        if channel == 63:
            if self.v2:
                state.add(T3WRAPAROUND * max(nsync, 1))
            else:
                state.add(T3WRAPAROUND)
            return None
        if 1 <= channel <= 15:
            return Marker(markers.classify(channel), channel, state.ofltime + nsync)
        warnings.warn("Skipping special record 0x%08X with channel %d" % (raw, channel),
                      RecordWarning, stacklevel=3)
        return None


_decoders = {
    RecordFormat.PicoHarpT3: PicoHarpT3Decoder(),
    RecordFormat.HydraHarpT3V1: HydraHarpT3Decoder(v2=False),
    RecordFormat.HydraHarpT3V2: HydraHarpT3Decoder(v2=True),
}


def decoder_for(fmt):
    """Return the record decoder for a `RecordFormat`."""
    return _decoders[RecordFormat(fmt)]


def decode_record(raw, fmt, state, markers=DEFAULT_MARKERS):
    """Decode one record, updating `state` when it is an overflow record."""
    return decoder_for(fmt).decode(int(raw), state, markers)


def iter_events(records, fmt, markers=DEFAULT_MARKERS, state=None, strict=True):
    """Lazily decode a record stream into photon and marker events.

    Arguments:
        records (iterable of int): raw records in file order.
        fmt (RecordFormat): layout of the records.
        markers (MarkerBits): marker codes used to classify markers.
        state (OverflowState or None): overflow accumulator. A fresh one is
            used when None; pass your own to inspect it afterwards.
        strict (bool): if True, raise `TimeRegression` as soon as the global
            sync time of an event is smaller than the one of the previous
            event.

    Yields:
        `Photon` and `Marker` tuples. Overflow records only update `state`.
    """
    decoder = decoder_for(fmt)
    if state is None:
        state = OverflowState()
    last_sync = 0
    for raw in records:
        event = decoder.decode(int(raw), state, markers)
        if event is None:
            continue
        if strict and event.sync < last_sync:
            raise TimeRegression(last_sync, event.sync)
        last_sync = event.sync
        yield event


def decode_t3records(t3records, fmt, strict=True):
    """Extract the different fields from the raw t3records array.

    This is the vectorised counterpart of `iter_events`: the overflow
    correction is a cumulative sum over the per-record overflow increments,
    and overflow records are removed from the output. With `strict`, a
    `TimeRegression` is raised if the sync time of an event is smaller than
    the one of the event before it.

    Returns:
        A dict of 1D arrays of the same length:

        - **sync** (*int64*): overflow-corrected macro-time, in sync periods.
        - **channel** (*uint8*): detector channel, 0 for markers.
        - **dtime** (*uint16*): micro-time (TCSPC bin), 0 for markers.
        - **marker** (*uint8*): marker code, 0 for photons.
    """
    fmt = RecordFormat(fmt)
    t3records = np.asarray(t3records, dtype=np.uint32)

    if fmt == RecordFormat.PicoHarpT3:
        nsync = (t3records & 0xFFFF).astype(np.int64)
        dtime = ((t3records >> 16) & 0xFFF).astype(np.uint16)
        channel = ((t3records >> 28) & 0xF).astype(np.uint8)
        special = channel == 15
        marker = np.where(special, dtime & 0xF, 0).astype(np.uint8)
        overflow = special & ((marker == 0) | (dtime == 0))
        increment = np.where(overflow, WRAPAROUND, 0).astype(np.int64)
        keep = ~overflow
    else:
        nsync = (t3records & 0x3FF).astype(np.int64)
        dtime = ((t3records >> 10) & 0x7FFF).astype(np.uint16)
        raw_channel = ((t3records >> 25) & 0x3F).astype(np.uint8)
        special = (t3records >> 31).astype(bool)
        overflow = special & (raw_channel == 63)
        if fmt == RecordFormat.HydraHarpT3V2:
            increment = np.where(overflow, T3WRAPAROUND * np.maximum(nsync, 1), 0)
        else:
            increment = np.where(overflow, T3WRAPAROUND, 0)
        increment = increment.astype(np.int64)
        is_marker = special & (raw_channel >= 1) & (raw_channel <= 15)
        if np.any(special & ~overflow & ~is_marker):
            warnings.warn("Skipping special records with channels outside 1..15",
                          RecordWarning, stacklevel=2)
        marker = np.where(is_marker, raw_channel, 0).astype(np.uint8)
        channel = (raw_channel + 1).astype(np.uint8)
        keep = ~special | is_marker

    sync = nsync + np.cumsum(increment)
    if strict:
        kept = sync[keep]
        backwards = np.flatnonzero(np.diff(kept) < 0)
        if backwards.size:
            i = backwards[0]
            raise TimeRegression(int(kept[i]), int(kept[i + 1]))
    is_marker = marker != 0
    channel = np.where(is_marker, 0, channel).astype(np.uint8)
    dtime = np.where(is_marker, 0, dtime).astype(np.uint16)
    return dict(sync=sync[keep], channel=channel[keep], dtime=dtime[keep], marker=marker[keep])
