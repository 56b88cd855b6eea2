"""roomrelay: room-based real-time chat relay with on-disk history."""

__version__ = "0.1.0"
