"""Multiplex network connections over one listener based on their payload."""

__version__ = "0.1.0"
__all__ = ["buffer", "matchers", "mux", "patricia"]