"""Exceptions raised by tilestitch."""

from .tiles import NoninvertibleModelError


class Cancelled(RuntimeError):
    """Raised when a cancellation event is set while work is in progress."""


__all__ = ["Cancelled", "NoninvertibleModelError"]
