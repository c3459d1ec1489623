"""Poll a Modbus TCP device and report or command its named I/O."""

__version__ = "0.1.0"
__all__ = ["__version__"]