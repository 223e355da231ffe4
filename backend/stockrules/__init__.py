"""Rule expression engine for price/volume trading conditions."""

__version__ = "0.1.0"
