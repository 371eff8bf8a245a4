"""Registry connectivity checks."""

import logging
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

import requests

from flashcache.hashing import DEFAULT_REGISTRY

logger = logging.getLogger(__name__)


class NetworkStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    PARTIAL = "partial"  # DNS works but the registry does not answer (or vice versa)


@dataclass
class NetworkCheckResult:
    status: NetworkStatus
    dns_available: bool
    registry_available: bool
    response_time: float
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def available(self) -> bool:
        """True when packages can be fetched from the registry."""
        return self.registry_available


class NetworkChecker:
    """Checks whether the package registry is reachable.

    Args:
        registry: Registry base URL
        timeout: Per-request timeout in seconds
        retries: Extra ping attempts after a failed one
        session: Optional requests session
    """

    def __init__(
        self,
        registry: str = DEFAULT_REGISTRY,
        timeout: float = 5.0,
        retries: int = 2,
        session: Optional[requests.Session] = None,
    ):
        self.registry = registry.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.session = session or requests.Session()
        self.last_result: Optional[NetworkCheckResult] = None

    def check_dns(self) -> bool:
        host = urlparse(self.registry).hostname
        if not host:
            return False
        # getaddrinfo has no timeout of its own
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="flashcache-dns")
        try:
            executor.submit(socket.getaddrinfo, host, None).result(timeout=self.timeout)
            return True
        except TimeoutError:
            logger.debug(f"DNS lookup of {host} timed out after {self.timeout}s")
            return False
        except OSError as e:
            logger.debug(f"DNS lookup of {host} failed: {e}")
            return False
        finally:
            executor.shutdown(wait=False)

    def check_registry(self) -> bool:
        url = f"{self.registry}/-/ping"
        for attempt in range(self.retries + 1):
            try:
                response = self.session.get(url, timeout=self.timeout)
                if response.status_code < 500:
                    return True
                logger.debug(f"Registry ping returned {response.status_code}")
            except requests.RequestException as e:
                logger.debug(f"Registry ping attempt {attempt + 1} failed: {e}")
        return False

    def check(self) -> NetworkCheckResult:
        """Probe DNS and the registry and cache the result."""
        start = time.monotonic()
        dns_available = self.check_dns()
        registry_available = self.check_registry()

        if dns_available and registry_available:
            status = NetworkStatus.ONLINE
        elif not dns_available and not registry_available:
            status = NetworkStatus.OFFLINE
        else:
            status = NetworkStatus.PARTIAL

        self.last_result = NetworkCheckResult(
            status=status,
            dns_available=dns_available,
            registry_available=registry_available,
            response_time=time.monotonic() - start,
        )
        logger.debug(f"Network status: {status.value}")
        return self.last_result

    def is_available(self, use_cached: bool = True) -> bool:
        """Whether the registry can be used, reusing the last result if any."""
        if use_cached and self.last_result is not None:
            return self.last_result.available
        return self.check().available
