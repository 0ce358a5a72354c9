"""Brain Bits: note ingestion and spaced-resurfacing email delivery."""

__version__ = "0.1.0"
