"""File transfer over UDP with handshakes, a sliding send window and bitmap acknowledgements."""

__version__ = "0.1.0"

__all__ = ["__version__"]