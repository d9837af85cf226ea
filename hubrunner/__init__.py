"""Host daemon that keeps a hub connection alive and runs automation apps."""

__version__ = "0.1.0"
