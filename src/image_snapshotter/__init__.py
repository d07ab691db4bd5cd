"""Single still images on demand from a continuous image stream."""

__version__ = "0.1.0"
