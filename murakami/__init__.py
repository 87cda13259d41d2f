"""In-memory append-only stream store, its radix-tree log, and TCP server building blocks."""

__version__ = "0.1.0"

__all__ = ["connection", "logtree", "server", "store"]