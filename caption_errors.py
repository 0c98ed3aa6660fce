"""
Error kinds raised by the caption pipeline.

ParseError is raised for untrusted segment input, CapabilityError before any
export work begins, EncodeError when the encoder dies mid-recording and
ExportCancelled when the user stops an export (not surfaced as a failure).
"""


class CaptionError(Exception):
    """Base class for every caption pipeline error."""


class ParseError(CaptionError, ValueError):
    """Segment input is malformed or missing a required field."""


class CapabilityError(CaptionError):
    """The runtime cannot decode the source or encode any requested format."""


class EncodeError(CaptionError):
    """The encoder failed while recording; no artifact is produced."""


class ExportCancelled(CaptionError):
    """The export was cancelled by the user."""


class ExportBusyError(CaptionError):
    """Another export is already running; the caller should wait."""
