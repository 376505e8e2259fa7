"""webrecover - AI-augmented error recovery for browser automation flows."""

__version__ = "0.4.0"
