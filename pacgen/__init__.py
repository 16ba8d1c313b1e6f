"""Generate register bindings for microcontrollers from vendor device files."""

__version__ = "0.1.0"
