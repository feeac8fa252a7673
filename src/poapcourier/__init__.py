"""Attendance credential delivery for checked-in event guests."""

__version__ = "0.1.0"
