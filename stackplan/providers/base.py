"""
Capability-typed cloud resource API.

A provider handle exposes one ResourceCapability per resource kind. The
executor only ever talks to these interfaces; what sits behind them (the
local simulator, a real SDK wrapper) is a plugin.
"""
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from stackplan.errors import OperationTimeoutError

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    BUCKET                 = "object-storage-bucket"
    DISTRIBUTION           = "cdn-distribution"
    DNS_ZONE               = "dns-zone"
    DNS_RECORD             = "dns-record"
    CERTIFICATE            = "tls-certificate"
    CERTIFICATE_VALIDATION = "tls-certificate-validation"
    ACCESS_POLICY          = "access-policy"


class ResourceCapability(ABC):
    """Create/Read/Update/Delete/WaitUntilReady for one resource kind."""

    kind: ResourceKind
    poll_interval: float = 5.0

    @abstractmethod
    def create(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create the resource and return its live attributes.

        The returned dict must contain ``id``.
        """

    @abstractmethod
    def read(self, resource_id: str) -> Optional[Dict[str, Any]]:
        """Return live attributes, or None if the resource no longer exists."""

    @abstractmethod
    def update(
        self, resource_id: str, attributes: Dict[str, Any], prior: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply new input attributes in place and return live attributes."""

    @abstractmethod
    def delete(self, resource_id: str) -> None:
        pass

    def is_ready(self, attributes: Dict[str, Any]) -> bool:
        """Terminal status check used by wait_until_ready."""
        return True

    def wait_until_ready(
        self, address: str, resource_id: str, timeout: float
    ) -> Dict[str, Any]:
        """
        Block until the provider reports a terminal status.

        Polls ``read`` every ``poll_interval`` seconds. Raises
        OperationTimeoutError once ``timeout`` seconds have passed.
        """
        deadline = time.monotonic() + timeout
        while True:
            live = self.read(resource_id)
            if live is None:
                raise RuntimeError(f"{resource_id} disappeared while waiting for it")
            if self.is_ready(live):
                return live
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise OperationTimeoutError(address, timeout)
            logger.debug("%s not ready yet (status=%s)", address, live.get("status"))
            time.sleep(min(self.poll_interval, remaining))


class ProviderHandle:
    """A named, configured provider instance (e.g. the ``aws.us_east_1`` alias)."""

    def __init__(self, name: str, capabilities: Dict[ResourceKind, ResourceCapability]) -> None:
        self.name = name
        self.capabilities = capabilities

    def capability(self, kind: ResourceKind) -> Optional[ResourceCapability]:
        return self.capabilities.get(kind)
