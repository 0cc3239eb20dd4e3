"""Asynchronous at-least-once delivery queue for outbound messages.

This package provides a persistent job store and worker processes that
deliver queued messages through a pluggable transport:

- Lease based dispatch allowing many independent workers on one store
- Exponential backoff with jitter and an attempt ceiling
- Permanent versus transient failure classification at the transport boundary
- Manual retry of permanently failed jobs
- Status synchronisation into the originating (parent) record
- Prometheus metrics, FastAPI REST API and a click CLI

Example:
    Basic usage with the FastAPI application::

        from async_delivery_queue.core import AsyncDeliveryCore
        from async_delivery_queue.api import create_app

        core = AsyncDeliveryCore(db_path="/data/delivery_queue.db")
        app = create_app(core, api_token="secret")
"""
