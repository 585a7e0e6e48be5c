"""Messaging - event stream intake, routing and durable queues.

Modules:
    stream:  EventStreamListener (SSE subscription to the NPL engine)
    routing: Static table from engine frames to SyncEvents and queues
    broker:  DurableQueueLayer on RabbitMQ (aio-pika)
"""

from .broker import DEFAULT_QUEUES, BrokerSettings, Delivery, DurableQueueLayer, QueueConfig
from .routing import DEVICE_QUEUE, TENANT_QUEUE, build_sync_event, is_business_event
from .stream import EventStreamListener, SseParser

__all__ = [
    "BrokerSettings",
    "DEFAULT_QUEUES",
    "Delivery",
    "DurableQueueLayer",
    "QueueConfig",
    "DEVICE_QUEUE",
    "TENANT_QUEUE",
    "build_sync_event",
    "is_business_event",
    "EventStreamListener",
    "SseParser",
]
