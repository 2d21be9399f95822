"""Temporal connection shared by the API process and standalone workers."""

from typing import Optional, TYPE_CHECKING

from temporalio.client import Client
from temporalio.runtime import Runtime, TelemetryConfig

from core.logging import get_logger

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)


def create_runtime() -> Runtime:
    """Runtime with worker heartbeating off (unsupported by older servers)."""
    return Runtime(
        telemetry=TelemetryConfig(),
        worker_heartbeat_interval=None,
    )


class TemporalClientWrapper:
    """Lazily connected Temporal client for one server address and namespace."""

    def __init__(self, server_address: str, namespace: str = "default"):
        self.server_address = server_address
        self.namespace = namespace
        self._client: Optional[Client] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TemporalClientWrapper":
        return cls(settings.temporal_server_address, settings.temporal_namespace)

    @property
    def client(self) -> Optional[Client]:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> Client:
        """Connect once; later calls return the same client."""
        if self._client is None:
            self._client = await Client.connect(
                self.server_address,
                namespace=self.namespace,
                runtime=create_runtime(),
            )
            logger.info("Temporal client connected", server_address=self.server_address,
                        namespace=self.namespace)
        return self._client

    async def disconnect(self) -> None:
        # temporalio clients hold no closable resources, dropping the reference is enough
        if self._client is not None:
            self._client = None
            logger.info("Temporal client released", server_address=self.server_address)
