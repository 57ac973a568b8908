"""Building blocks for a gossip-style publish/subscribe node."""

__version__ = "0.1.0"