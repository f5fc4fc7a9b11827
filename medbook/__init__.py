"""MedBook: capacity-based appointment booking core."""

__version__ = "0.1.0"
