"""
Encoding and decoding of single tags of the PTU file header.

Every tag starts with a fixed 48 byte head::

    | name (32 bytes, NUL padded) | index (int32) | type (uint32) | value (8 bytes) |

For the fixed size types the last 8 bytes hold the value itself. For
strings, blobs and float arrays they hold the payload length in bytes and
the payload follows immediately after the head.

"""

import struct
from enum import IntEnum
from typing import Any, NamedTuple

import numpy as np

from .errors import TruncatedStream, UnrecognizedTagType


class TagType(IntEnum):
    Empty8 = 0xFFFF0008
    Bool8 = 0x00000008
    Int8 = 0x10000008
    BitSet64 = 0x11000008
    Color8 = 0x12000008
    Float8 = 0x20000008
    TDateTime = 0x21000008
    Float8Array = 0x2001FFFF
    AnsiString = 0x4001FFFF
    WideString = 0x4002FFFF
    BinaryBlob = 0xFFFFFFFF


_VARIABLE_TYPES = frozenset([TagType.Float8Array, TagType.AnsiString,
                             TagType.WideString, TagType.BinaryBlob])
_INTEGER_TYPES = frozenset([TagType.Int8, TagType.BitSet64, TagType.Color8])

# Struct fields: 32-char string, int32, uint32, int64
_tag_struct = struct.Struct('<32s i I q')
_tag_head = struct.Struct('<32s i I')
TAG_SIZE = _tag_struct.size
NAME_SIZE = 32


class Tag(NamedTuple):
    name: str
    idx: int
    type: TagType
    value: Any = None


def ole_to_unix(ole_days):
    """Convert an OLE automation date (days since 1899-12-30) to Unix seconds."""
    return (ole_days - 719529 + 693960) * 86400


def unix_to_ole(seconds):
    return seconds / 86400 + 719529 - 693960


def decode_tag(buffer, offset=0):
    """Decode a single tag from the PTU header.

    Arguments:
        buffer (bytes-like): raw file content (or any slice of it).
        offset (int): position of the tag head inside `buffer`.

    Returns:
        A tuple `(tag, consumed)` where `consumed` is the number of bytes
        occupied by the tag, head and payload included.

    Trailing NULs of `AnsiString` values are stripped, so a string that
    ends in NUL does not survive an encode and decode round trip.
    """
    if len(buffer) < offset + TAG_SIZE:
        raise TruncatedStream("Header ends inside a tag at offset %d" % offset)
    raw_name, idx, type_code, register = _tag_struct.unpack_from(buffer, offset)
    name = raw_name.split(b'\0', 1)[0].rstrip(b' ').decode('latin1')
    try:
        tag_type = TagType(type_code)
    except ValueError:
        raise UnrecognizedTagType(type_code, name) from None

    if tag_type not in _VARIABLE_TYPES:
        return Tag(name, idx, tag_type, _decode_register(tag_type, register)), TAG_SIZE

    start = offset + TAG_SIZE
    if register < 0 or len(buffer) < start + register:
        raise TruncatedStream("Payload of tag '%s' (%d bytes) runs past the end "
                              "of the header" % (name, register))
    payload = bytes(buffer[start:start + register])
    return Tag(name, idx, tag_type, _decode_payload(tag_type, payload)), TAG_SIZE + register


def _decode_register(tag_type, register):
    if tag_type == TagType.Empty8:
        return None
    if tag_type == TagType.Bool8:
        return bool(register)
    if tag_type in _INTEGER_TYPES:
        return register
    value = float(np.int64(register).view('float64'))
    if tag_type == TagType.TDateTime:
        return ole_to_unix(value)
    return value


def _decode_payload(tag_type, payload):
    if tag_type == TagType.AnsiString:
        byte_string = payload.rstrip(b'\0')
        try:
            return byte_string.decode()
        except UnicodeDecodeError:
            # Not UTF-8, older PicoQuant software writes latin1
            return byte_string.decode('latin1')
    if tag_type == TagType.WideString:
        return payload.decode('utf-16-le').rstrip('\0')
    if tag_type == TagType.Float8Array:
        return np.frombuffer(payload, dtype='<f8', count=len(payload) // 8)
    return payload


def encode_tag(tag):
    """Encode a `Tag` into its exact on-disk representation."""
    name = tag.name.encode('latin1')
    if len(name) > NAME_SIZE:
        raise ValueError("Tag name '%s' is longer than %d bytes" % (tag.name, NAME_SIZE))
    tag_type = TagType(tag.type)
    if tag_type in _VARIABLE_TYPES:
        payload = _encode_payload(tag_type, tag.value)
        return _tag_struct.pack(name, tag.idx, tag_type, len(payload)) + payload
    return _tag_head.pack(name, tag.idx, tag_type) + _encode_register(tag_type, tag.value)


def _encode_register(tag_type, value):
    if tag_type == TagType.Empty8:
        return bytes(8)
    if tag_type == TagType.Bool8:
        return struct.pack('<q', int(bool(value)))
    if tag_type in _INTEGER_TYPES:
        return struct.pack('<q', int(value))
    if tag_type == TagType.TDateTime:
        value = unix_to_ole(value)
    return struct.pack('<d', float(value))


def _encode_payload(tag_type, value):
    if tag_type == TagType.AnsiString:
        return value.encode() if isinstance(value, str) else bytes(value)
    if tag_type == TagType.WideString:
        return value.encode('utf-16-le')
    if tag_type == TagType.Float8Array:
        return np.asarray(value, dtype='<f8').tobytes()
    return bytes(value)


def empty_tag(name, idx=-1):
    return Tag(name, idx, TagType.Empty8, None)


def bool_tag(name, value, idx=-1):
    return Tag(name, idx, TagType.Bool8, bool(value))


def int_tag(name, value, idx=-1):
    return Tag(name, idx, TagType.Int8, int(value))


def float_tag(name, value, idx=-1):
    return Tag(name, idx, TagType.Float8, float(value))


def datetime_tag(name, seconds, idx=-1):
    """Tag holding a Unix timestamp, stored on disk as an OLE date."""
    return Tag(name, idx, TagType.TDateTime, float(seconds))


def string_tag(name, value, idx=-1):
    return Tag(name, idx, TagType.AnsiString, value)
