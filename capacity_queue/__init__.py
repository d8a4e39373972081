"""Agent capacity and queueing engine for inbound customer conversations."""

__version__ = "0.1.0"
