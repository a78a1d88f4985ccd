"""
scan_errors.py

Errors raised by the register scanning pipeline. All of them end the run;
no partial detections are returned.
"""


class ScanError(Exception):
    """Base class for failures of a register scan run."""


class NoImageSuppliedError(ScanError):
    """Run was invoked without any image."""


class ImageDecodeError(ScanError):
    """Image bytes could not be decoded into a pixel buffer."""


class EmptyRosterError(ScanError):
    """Roster scope resolved to zero people."""
