"""evtrace — ERC-20/ERC-721 event tracer and transfer history reconciler."""

__version__ = "0.1.0"
