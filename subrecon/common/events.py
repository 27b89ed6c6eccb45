"""Kafka envelope + producer helpers for audit events.

Audit events describe every reconciled notification for external
observability tooling; they are written to the outbox inside the ledger
transaction and drained to Kafka by the outbox publisher.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from subrecon.common.config import settings


class EventEnvelope(BaseModel):
    """Audit event as published to `AUDIT_TOPIC`.

    `aggregate_id` is the subscription id (or the purchase token when no
    subscription is linked) and doubles as the Kafka message key.
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    source: str = Field(default_factory=lambda: settings.service_name)
    schema_version: int = 1
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


class KafkaBus:
    """Lazily started idempotent producer used by the outbox publisher."""

    def __init__(self, bootstrap_servers: str | None = None, client_id: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self.client_id = client_id or settings.service_name
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                acks="all",
                enable_idempotence=True,
            )
            await producer.start()
            self._producer = producer
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        """Send one envelope keyed by aggregate so a subscription's events stay ordered."""

        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            value=json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
            headers=[("event_type", event.event_type.encode("utf-8"))],
        )

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
