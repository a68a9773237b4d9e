"""smartedit: ordered image edits with overlays and detection-driven smart crop."""

__version__ = "1.0.0"
