"""mmem - session transcript memory search."""

__version__ = "0.3.0"
