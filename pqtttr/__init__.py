__author__ = """Timothy Kallady"""
__email__ = 't.kallady@garvan.org.au'
__version__ = '0.1.0'


from .errors import (PtuError, NotAPtuFile, UnrecognizedTagType, UnsupportedRecordType,
                     TruncatedStream, TimeRegression, NotAnImagingFile)
from .tags import Tag, TagType, decode_tag, encode_tag
from .header import HeaderTable, RecordFormat, decode_header, encode_header, print_tags
from .records import Photon, Marker, MarkerKind, MarkerBits, OverflowState, decode_record, iter_events
from .pqwriter import ScanGeometry, ScanEncoder, encode_ptu, write_ptu, write_pt3
from .pqreader import read_ptu, read_pt3, iter_ptu_events, iter_pt3_events, load_ptfile
from .image import events_to_counts
