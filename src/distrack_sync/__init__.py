"""DisTrack Sync - device linking, token lifecycle and offline session upload."""

__version__ = "1.0.0"
