"""Asynchronous dispatcher for scheduled messages delivered through a webhook.

This package provides a small scheduled-delivery service with features including:

- A background loop that sends due messages in bounded batches, oldest first
- Guarded status transitions persisted in SQLite
- A Redis cache of delivery identifiers and their delivery time
- Prometheus metrics for monitoring
- FastAPI REST API for control and message management

Example:
    Basic usage with the FastAPI application::

        from async_message_dispatcher.api import create_app
        from async_message_dispatcher.core import MessageDispatcher
        from async_message_dispatcher.delivery import WebhookClient
        from async_message_dispatcher.persistence import MessageRepository
        from async_message_dispatcher.sql import create_adapter

        dispatcher = MessageDispatcher(
            repository=MessageRepository(create_adapter("/data/messages.db")),
            channel=WebhookClient("https://hooks.example.com/send", auth_key="secret"),
        )
        app = create_app(dispatcher)
"""
