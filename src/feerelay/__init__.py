"""Fee-delegated transaction relay for signature-authorized transfers."""

__version__ = "0.1.0"
