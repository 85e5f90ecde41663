"""Runtime configuration and the per-request user session."""

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["customer", "admin"]


class ServiceConfig(BaseModel):
    """Settings for talking to the order backend.

    Attributes:
        api_base_url: Root URL of the order/credit REST backend.
        request_timeout: Per-request timeout in seconds.
        outbox_path: JSON-lines file holding the saga intent log.
        bulk_batch_size: Requests sent concurrently per bulk chunk.
        kafka_bootstrap_servers: Enables the Kafka notifier when set.
        notification_topic: Topic reconciliation outcomes are published to.
        service_token: Token used to resume interrupted sagas at startup.
    """

    api_base_url: str = "http://localhost:8090"
    request_timeout: float = Field(10.0, gt=0)
    outbox_path: str = "reconciler-outbox.jsonl"
    bulk_batch_size: int = Field(5, gt=0)
    kafka_bootstrap_servers: Optional[str] = None
    notification_topic: str = "reconciliation.events"
    service_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Build the configuration from environment variables."""
        return cls(
            api_base_url=os.getenv("ORDER_API_BASE_URL", "http://localhost:8090").rstrip("/"),
            request_timeout=float(os.getenv("ORDER_API_TIMEOUT", "10")),
            outbox_path=os.getenv("OUTBOX_PATH", "reconciler-outbox.jsonl"),
            bulk_batch_size=int(os.getenv("BULK_BATCH_SIZE", "5")),
            kafka_bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS") or None,
            notification_topic=os.getenv("NOTIFICATION_TOPIC", "reconciliation.events"),
            service_token=os.getenv("ORDER_API_SERVICE_TOKEN") or None,
        )


class UserSession(BaseModel):
    """Credentials of the caller, passed explicitly to every API client.

    Customer sessions are subject to the loading-slip guard; admin sessions
    are not.
    """

    token: Optional[str] = None
    role: Role = "customer"
    user_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
