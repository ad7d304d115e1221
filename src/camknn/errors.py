from __future__ import annotations

class CamKnnError(Exception):
    """Base class for errors raised by camknn."""

class CameraUnavailableError(CamKnnError):
    """The frame source could not be opened or stopped delivering frames."""

class ExtractorInitError(CamKnnError):
    """The feature extractor failed to load or warm up."""

class NoClassSelectedError(CamKnnError, RuntimeError):
    """An example was recorded while no class was selected."""
