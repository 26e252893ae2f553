"""Settlement engine: webhook-driven settlement of digital-goods payments."""

__version__ = "0.1.0"
