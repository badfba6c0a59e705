"""Job event decoding, replay and session key resolution."""

__version__ = "0.1.0"
