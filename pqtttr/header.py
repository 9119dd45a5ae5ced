"""
This module contains functions to read and write the headers of PicoQuant
TTTR files: the tagged header of .ptu files and the fixed binary header
of legacy .pt3 files.

"""

import warnings
from collections.abc import Mapping
from enum import Enum

import numpy as np

from .errors import (NotAPtuFile, NotAnImagingFile, T2ModeWarning, TruncatedStream,
                     UnsupportedRecordType)
from .tags import TagType, decode_tag, empty_tag, encode_tag

PTU_MAGIC = b'PQTTTR\0\0'
DEFAULT_VERSION = '00.0.1'
HEADER_END = 'Header_End'  # Last tag of the header (BLOCKEND)

# Record Types
_ptu_rec_type = dict(
    rtPicoHarpT3=0x00010303,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $03 (PicoHarp)
    rtPicoHarpT2=0x00010203,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $03 (PicoHarp)
    rtHydraHarpT3=0x00010304,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $04 (HydraHarp)
    rtHydraHarpT2=0x00010204,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $04 (HydraHarp)
    rtHydraHarp2T3=0x01010304,  # (SubID = $01 ,RecFmt: $01) (V2), T-Mode: $03 (T3), HW: $04 (HydraHarp)
    rtHydraHarp2T2=0x01010204,  # (SubID = $01 ,RecFmt: $01) (V2), T-Mode: $02 (T2), HW: $04 (HydraHarp)
    rtTimeHarp260NT3=0x00010305,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $05 (TimeHarp260N)
    rtTimeHarp260NT2=0x00010205,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $05 (TimeHarp260N)
    rtTimeHarp260PT3=0x00010306,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $06 (TimeHarp260P)
    rtTimeHarp260PT2=0x00010206,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $06 (TimeHarp260P)
    rtMultiHarpNT3=0x00010307,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $07 (MultiHarp150N)
    rtMultiHarpNT2=0x00010207,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $07 (MultiHarp150N)
)
PTU_RECORD_TYPES = _ptu_rec_type

# Reverse mapping
_ptu_rec_type_r = {v: k for k, v in _ptu_rec_type.items()}

# T2 files we recognise but do not decode
_t2_rec_types = ('rtPicoHarpT2', 'rtHydraHarpT2', 'rtHydraHarp2T2')

# Tags an imaging PTU file can not be decoded without
IMAGING_TAGS = ('ImgHdr_PixX', 'ImgHdr_PixY', 'TTResultFormat_TTTRRecType')


class RecordFormat(Enum):
    """Layout of the 32-bit records, selected by `TTResultFormat_TTTRRecType`."""

    PicoHarpT3 = _ptu_rec_type['rtPicoHarpT3']
    HydraHarpT3V1 = _ptu_rec_type['rtHydraHarpT3']
    HydraHarpT3V2 = _ptu_rec_type['rtHydraHarp2T3']

    @property
    def record_type(self):
        """Name of the record type as used by PicoQuant, e.g. 'rtPicoHarpT3'."""
        return _ptu_rec_type_r[self.value]

    @property
    def mode(self):
        return 'T%d' % ((self.value >> 8) & 0xFF)


def resolve_record_format(code):
    """Map a `TTResultFormat_TTTRRecType` value to a `RecordFormat`.

    PicoHarp and HydraHarp T2 files only trigger a `T2ModeWarning` and
    return None. Any other code raises `UnsupportedRecordType`.
    """
    try:
        return RecordFormat(code)
    except ValueError:
        pass
    name = _ptu_rec_type_r.get(code)
    if name in _t2_rec_types:
        warnings.warn('Record type "%s" is a T2 format, records are not decoded' % name,
                      T2ModeWarning, stacklevel=2)
        return None
    raise UnsupportedRecordType(code, name)


class HeaderTable(Mapping):
    """Read-only, ordered view of the tags of a PTU header.

    Keys are `(name, idx)` tuples. A plain tag name is also accepted and
    refers to the scalar tag (index -1), or to the first tag with that
    name if the tag only exists with an index.
    """

    def __init__(self, tags, version='', offsets=None):
        self._tags = tuple(tags)
        self._offsets = tuple(offsets) if offsets is not None else None
        self.version = version
        self._index = {}
        self._first = {}
        for tag in self._tags:
            self._index.setdefault((tag.name, tag.idx), tag)
            self._first.setdefault(tag.name, tag)

    def _lookup(self, key):
        if isinstance(key, str):
            tag = self._index.get((key, -1)) or self._first.get(key)
            if tag is None:
                raise KeyError(key)
            return tag
        try:
            return self._index[tuple(key)]
        except TypeError:
            raise KeyError(key) from None

    def __getitem__(self, key):
        return self._lookup(key).value

    def __iter__(self):
        return iter(self._index)

    def __len__(self):
        return len(self._index)

    def __repr__(self):
        return '<HeaderTable version=%r, %d tags>' % (self.version, len(self._tags))

    def tag(self, key):
        """Return the full `Tag` for `key` instead of only its value."""
        return self._lookup(key)

    def tags(self):
        """All tags in file order, duplicates and the `Header_End` sentinel included."""
        return self._tags

    def offsets(self):
        return self._offsets

    def indexed(self, name):
        """Values of all tags called `name`, ordered by their index."""
        return [t.value for t in sorted((t for t in self._tags if t.name == name),
                                        key=lambda t: t.idx)]

    @property
    def record_format(self):
        return resolve_record_format(self['TTResultFormat_TTTRRecType'])

    def require_imaging(self):
        missing = [name for name in IMAGING_TAGS if name not in self]
        if missing:
            raise NotAnImagingFile("This is not a FLIM PTU file, missing tags: %s"
                                   % ', '.join(missing))


def decode_header(buffer):
    """Read the header tags of a PTU file.

    Arguments:
        buffer (bytes-like): the raw binary content of the file (or at
            least of its header).

    Returns:
        A tuple `(header, offset)` with the `HeaderTable` and the offset of
        the first TTTR record.
    """
    magic = bytes(buffer[:8])
    if magic.rstrip(b'\0') != PTU_MAGIC.rstrip(b'\0'):
        raise NotAPtuFile("This file is not a valid PTU file. Magic: '%s'." % magic)
    if len(buffer) < 16:
        raise TruncatedStream("File ends inside the format version string")
    version = bytes(buffer[8:16]).rstrip(b'\0').decode('latin1')

    offset = 16  # initial bytes to skip
    tags = []
    offsets = []
    while True:
        tag, consumed = decode_tag(buffer, offset)
        tags.append(tag)
        offsets.append(offset)
        offset += consumed
        if tag.name == HEADER_END:
            break
    return HeaderTable(tags, version, offsets), offset


def encode_header(tags, version=DEFAULT_VERSION):
    """Serialize `tags` into a complete PTU header.

    The magic and version strings come first, then the tags in the given
    order. A `Header_End` sentinel is appended unless it is already the
    last tag.
    """
    tags = list(tags)
    if any(tag.name == HEADER_END for tag in tags[:-1]):
        raise ValueError("'%s' must be the last tag of the header" % HEADER_END)
    if not tags or tags[-1].name != HEADER_END:
        tags.append(empty_tag(HEADER_END))
    version = version.encode('latin1')
    if len(version) > 8:
        raise ValueError("Format version '%s' is longer than 8 bytes" % version)

    parts = [PTU_MAGIC, version.ljust(8, b'\0')]
    parts.extend(encode_tag(tag) for tag in tags)
    return b''.join(parts)


def print_tags(header):
    """Print a table of tags from a PTU file header."""
    offsets = header.offsets() or [0] * len(header.tags())
    seen = set()
    for offset, tag in zip(offsets, header.tags()):
        start = 'D' if (tag.name, tag.idx) in seen else ' '  # mark for duplicated tags
        seen.add((tag.name, tag.idx))
        endline = '\n'
        if tag.type == TagType.Float8:
            value = f'{tag.value:20.4g}'
        elif tag.type in (TagType.AnsiString, TagType.WideString):
            value = f'{len(tag.value):>20}'
            endline = tag.value + '\n'
        elif tag.type in (TagType.BinaryBlob, TagType.Float8Array):
            value = f'{len(tag.value):>20}'
        else:
            value = f'{str(tag.value):>20}'
        line = f'{start} {offset:6} {tag.name:32s} {value} {tag.idx:8}  {tag.type.name:12} '
        print(line, end=endline)


# - - - - - - - - - - - - - - - - - - - - - - - - - - - - - -
# Legacy PicoHarp .pt3 header (format version 2.0)

_pt3_header_dtype = np.dtype([
    ('Ident', 'S16'),
    ('FormatVersion', 'S6'),
    ('CreatorName', 'S18'),
    ('CreatorVersion', 'S12'),
    ('FileTime', 'S18'),
    ('CRLF', 'S2'),
    ('Comment', 'S256'),
    ('NumberOfCurves', '<i4'),
    ('BitsPerRecord', '<i4'),  # bits in each T3 record
    ('RoutingChannels', '<i4'),
    ('NumberOfBoards', '<i4'),
    ('ActiveCurve', '<i4'),
    ('MeasurementMode', '<i4'),
    ('SubMode', '<i4'),
    ('RangeNo', '<i4'),
    ('Offset', '<i4'),
    ('AcquisitionTime', '<i4'),  # in ms
    ('StopAt', '<u4'),
    ('StopOnOvfl', '<i4'),
    ('Restart', '<i4'),
    ('DispLinLog', '<i4'),
    ('DispTimeAxisFrom', '<i4'),
    ('DispTimeAxisTo', '<i4'),
    ('DispCountAxisFrom', '<i4'),
    ('DispCountAxisTo', '<i4'),
])

_pt3_dispcurve_dtype = np.dtype([
    ('DispCurveMapTo', '<i4'),
    ('DispCurveShow', '<i4')])

_pt3_params_dtype = np.dtype([
    ('ParamStart', '<f4'),
    ('ParamStep', '<f4'),
    ('ParamEnd', '<f4')])

_pt3_repeat_dtype = np.dtype([
    ('RepeatMode', '<i4'),
    ('RepeatsPerCurve', '<i4'),
    ('RepeatTime', '<i4'),
    ('RepeatWaitTime', '<i4'),
    ('ScriptName', 'S20')])

# Hardware information header
_pt3_hardware_dtype = np.dtype([
    ('HardwareIdent', 'S16'),
    ('HardwarePartNo', 'S8'),
    ('HardwareSerial', '<i4'),
    ('SyncDivider', '<i4'),
    ('CFDZeroCross0', '<i4'),
    ('CFDLevel0', '<i4'),
    ('CFDZeroCross1', '<i4'),
    ('CFDLevel1', '<i4'),
    ('Resolution', '<f4'),
    ('RouterModelCode', '<i4'),
    ('RouterEnabled', '<i4')])

_pt3_router_dtype = np.dtype([
    ('InputType', '<i4'),
    ('InputLevel', '<i4'),
    ('InputEdge', '<i4'),
    ('CFDPresent', '<i4'),
    ('CFDLevel', '<i4'),
    ('CFDZCross', '<i4')])

# Time tagging mode specific header
_pt3_ttmode_dtype = np.dtype([
    ('ExtDevices', '<i4'),
    ('Reserved1', '<i4'),
    ('Reserved2', '<i4'),
    ('InpRate0', '<i4'),
    ('InpRate1', '<i4'),
    ('StopAfter', '<i4'),
    ('StopReason', '<i4'),
    ('nRecords', '<i4'),
    ('ImgHdrSize', '<i4')])

# Blocks in file order: (meta key, dtype, count)
_pt3_blocks = (
    ('header', _pt3_header_dtype, 1),
    ('dispcurve', _pt3_dispcurve_dtype, 8),
    ('params', _pt3_params_dtype, 3),
    ('repeatgroup', _pt3_repeat_dtype, 1),
    ('hardware', _pt3_hardware_dtype, 1),
    ('router', _pt3_router_dtype, 4),
    ('ttmode', _pt3_ttmode_dtype, 1),
)

# Positions in the imaging header of a scanning (LSM) acquisition
_pt3_imghdr_fields = dict(Dimensions=0, Ident=1, Frame=2, LineStart=3, LineStop=4,
                          Pattern=5, PixX=6, PixY=7)


def _read_block(f, dtype, count):
    size = dtype.itemsize * count
    data = f.read(size)
    if len(data) < size:
        raise TruncatedStream("PT3 header ends after %d of %d bytes of a block"
                              % (len(data), size))
    return np.frombuffer(data, dtype=dtype, count=count).copy()


def read_pt3_header(f):
    """Read the binary header of a PT3 file from the open file object `f`.

    Returns a dict with one numpy structured array per header block and
    the `imghdr` int32 array. On return `f` is positioned on the first
    T3 record.
    """
    meta = {}
    for key, dtype, count in _pt3_blocks:
        meta[key] = _read_block(f, dtype, count)
        if key == 'header' and meta['header']['FormatVersion'][0] != b'2.0':
            raise IOError(("Format '%s' not supported. "
                           "Only valid format is '2.0'.") %
                          meta['header']['FormatVersion'][0])

    # Special header for imaging. How many of the following ImgHdr
    # array elements are actually present in the file is indicated by
    # ImgHdrSize above.
    img_hdr_size = int(meta['ttmode']['ImgHdrSize'][0])
    if img_hdr_size == 0:
        raise NotAnImagingFile("This PT3 file has no imaging header (ImgHdrSize = 0)")
    meta['imghdr'] = _read_block(f, np.dtype('<i4'), img_hdr_size)
    return meta


def write_pt3_header(f, meta):
    """Write the blocks of a PT3 header, as returned by `read_pt3_header`."""
    for key, dtype, count in _pt3_blocks:
        block = np.asarray(meta[key], dtype=dtype)
        if block.size != count:
            raise ValueError("PT3 header block '%s' must have %d entries" % (key, count))
        f.write(block.tobytes())
    imghdr = np.asarray(meta['imghdr'], dtype='<i4')
    if imghdr.size != int(meta['ttmode']['ImgHdrSize'][0]):
        raise ValueError("ImgHdrSize does not match the imaging header length")
    f.write(imghdr.tobytes())


def pt3_imaging_fields(imghdr):
    """Name the scanner fields of a PT3 imaging header."""
    if len(imghdr) < len(_pt3_imghdr_fields):
        raise NotAnImagingFile("Imaging header has only %d fields" % len(imghdr))
    return {name: int(imghdr[i]) for name, i in _pt3_imghdr_fields.items()}
