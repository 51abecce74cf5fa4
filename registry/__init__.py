"""Device registry backend: device identity, command queue and poll protocol."""

__version__ = "0.1.0"
