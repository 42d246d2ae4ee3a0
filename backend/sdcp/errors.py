"""Exceptions raised by the printer engine."""


class SaturnError(Exception):
    """Base class for all errors raised by the engine."""


class PrinterDisconnectedError(SaturnError, ConnectionError):
    """A command was issued while no printer is connected to the broker."""


class UploadError(SaturnError):
    """The file selected for upload could not be read."""
