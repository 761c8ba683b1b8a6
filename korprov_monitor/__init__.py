"""Booking job monitor for the remote driving test booking worker."""

__version__ = "0.1.0"
