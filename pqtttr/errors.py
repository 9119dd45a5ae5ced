"""Exceptions and warnings raised while reading or writing TTTR files."""


class PtuError(Exception):
    """Base class of all errors raised by pqtttr."""


class NotAPtuFile(PtuError, IOError):
    """The leading magic string is not ``PQTTTR``."""


class UnrecognizedTagType(PtuError, ValueError):
    """A header tag carries a type code outside the known set."""

    def __init__(self, type_code, name=None):
        self.type_code = type_code
        self.name = name
        msg = "Unrecognized tag type 0x%08X" % type_code
        if name:
            msg += " for tag '%s'" % name
        super().__init__(msg)


class UnsupportedRecordType(PtuError, NotImplementedError):
    """The record type code is not a PicoHarp or HydraHarp format."""

    def __init__(self, code, name=None):
        self.code = code
        self.name = name
        super().__init__('Sorry, decoding "%s" record type is not implemented!'
                         % (name or "0x%08X" % code))


class TruncatedStream(PtuError, EOFError):
    """The input ended in the middle of a tag or header block."""


class TimeRegression(PtuError, ValueError):
    """The absolute sync time would move backwards."""

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__("Sync time %d is smaller than current time %d"
                         % (requested, current))


class NotAnImagingFile(PtuError, IOError):
    """The file carries no scan imaging header."""


class PtuWarning(UserWarning):
    """Base class of non-fatal conditions."""


class T2ModeWarning(PtuWarning):
    """T2 files are recognised but their records are not decoded."""


class RecordWarning(PtuWarning):
    """A record could not be interpreted and was skipped."""


class TruncatedRecordsWarning(PtuWarning):
    """Fewer records are present than the header declares."""
