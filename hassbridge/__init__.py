"""hassbridge: a resilient client layer for reading and changing Home Assistant config."""

__version__ = "0.1.0"
