"""Logging helpers for the async delivery queue."""

import logging


def get_logger(name: str = "AsyncDeliveryQueue") -> logging.Logger:
    """Return a :class:`logging.Logger` bound to ``name``.

    Note: handlers and levels are configured once via ``logging.basicConfig()``
    in the entry point (see :mod:`async_delivery_queue.cli`) to avoid
    duplicate handlers.
    """
    return logging.getLogger(name)
