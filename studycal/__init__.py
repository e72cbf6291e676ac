"""Study event scheduling mirrored into each participant's Google Calendar."""

__version__ = "0.1.0"
