"""Registry and controller for WiZ smart bulbs on the local network."""

__version__ = "0.1.0"
