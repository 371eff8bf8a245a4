"""Error taxonomy, recovery strategies and exception classification.

Every failure that crosses a component boundary is expressed as a
:class:`FlashError` carrying an :class:`ErrorCategory`. Categories are
assigned where the failure happens (or derived from the exception *type*
by :func:`classify_exception`), and the recovery strategy follows from the
category alone.
"""

import errno
import logging
import socket
import subprocess
import traceback
from enum import Enum
from typing import Any, Dict, Optional

import requests
from botocore import exceptions as boto_exc

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Failure categories, grouped by family."""

    # Filesystem
    FILE_NOT_FOUND = "file-not-found"
    PERMISSION_DENIED = "permission-denied"
    DISK_SPACE = "disk-space"
    FILE_SYSTEM = "file-system"

    # Network
    NETWORK_TIMEOUT = "network-timeout"
    NETWORK_CONNECTION = "network-connection"
    NETWORK_DNS = "network-dns"
    NETWORK = "network"

    # Cloud provider
    CLOUD_AUTHENTICATION = "cloud-authentication"
    CLOUD_PERMISSION = "cloud-permission"
    CLOUD_RESOURCE = "cloud-resource"
    CLOUD_QUOTA = "cloud-quota"
    CLOUD = "cloud"

    # Package
    PACKAGE_NOT_FOUND = "package-not-found"
    PACKAGE_INVALID = "package-invalid"
    PACKAGE_VERSION = "package-version"

    # Configuration
    CONFIG_INVALID = "config-invalid"
    CONFIG_MISSING = "config-missing"
    CONFIG = "config"

    # Dependency
    DEPENDENCY_CONFLICT = "dependency-conflict"
    DEPENDENCY_MISSING = "dependency-missing"

    # Process
    PROCESS_TIMEOUT = "process-timeout"
    PROCESS_CRASH = "process-crash"

    # Memory
    MEMORY_LIMIT = "memory-limit"
    MEMORY_LEAK = "memory-leak"

    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """What the caller should do about a categorized failure."""

    FAIL = "fail"
    RETRY = "retry"
    ALTERNATIVE = "use-alternative"
    CONTINUE_DEGRADED = "continue-degraded"
    IGNORE = "ignore"


_RETRY = {
    ErrorCategory.NETWORK_TIMEOUT,
    ErrorCategory.NETWORK_CONNECTION,
    ErrorCategory.NETWORK_DNS,
    ErrorCategory.NETWORK,
    ErrorCategory.CLOUD_RESOURCE,
    ErrorCategory.PROCESS_TIMEOUT,
}

_ALTERNATIVE = {
    ErrorCategory.CLOUD_AUTHENTICATION,
    ErrorCategory.CLOUD_PERMISSION,
    ErrorCategory.CLOUD_QUOTA,
    ErrorCategory.CLOUD,
    ErrorCategory.PACKAGE_NOT_FOUND,
}

_DEGRADED = {
    ErrorCategory.CONFIG_INVALID,
    ErrorCategory.CONFIG_MISSING,
    ErrorCategory.CONFIG,
}


def recovery_for(category: ErrorCategory) -> RecoveryStrategy:
    """Return the recovery strategy for a category.

    Args:
        category: Error category

    Returns:
        RecoveryStrategy the caller should apply
    """
    if category in _RETRY:
        return RecoveryStrategy.RETRY
    if category in _ALTERNATIVE:
        return RecoveryStrategy.ALTERNATIVE
    if category in _DEGRADED:
        return RecoveryStrategy.CONTINUE_DEGRADED
    return RecoveryStrategy.FAIL


class FlashError(Exception):
    """Base exception for all categorized failures.

    Attributes:
        category: Failure category
        cause: Underlying exception, if any
        context: Extra key/value details for verbose reports
    """

    default_category = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.category = category or self.default_category
        self.cause = cause
        self.context = context or {}

    @property
    def recovery(self) -> RecoveryStrategy:
        return recovery_for(self.category)

    @property
    def retryable(self) -> bool:
        return self.recovery is RecoveryStrategy.RETRY

    @property
    def recoverable(self) -> bool:
        return self.recovery is not RecoveryStrategy.FAIL

    def report(self) -> str:
        """Build a multi-line report for verbose output."""
        parts = [
            f"{type(self).__name__}: {self}",
            f"Category: {self.category.value}",
            f"Recovery: {self.recovery.value}",
        ]
        if self.cause is not None:
            parts.append(f"Original error: {self.cause!r}")
            tb = "".join(
                traceback.format_exception(
                    type(self.cause), self.cause, self.cause.__traceback__
                )
            )
            parts.append(f"Original traceback:\n{tb}")
        if self.context:
            parts.append(f"Context: {self.context}")
        return "\n".join(parts)


class CacheError(FlashError):
    """Base exception for local cache failures."""

    default_category = ErrorCategory.FILE_SYSTEM


class CacheDiskFullError(CacheError):
    """Raised when the cache volume has no room for a write."""

    default_category = ErrorCategory.DISK_SPACE


class CachePermissionError(CacheError):
    """Raised when the cache root is not writable."""

    default_category = ErrorCategory.PERMISSION_DENIED


class CacheLockError(CacheError):
    """Raised when the cache index lock cannot be acquired."""

    default_category = ErrorCategory.PROCESS_TIMEOUT


class IntegrityError(CacheError):
    """Raised when stored content does not match its recorded digest."""

    default_category = ErrorCategory.PACKAGE_INVALID


class SnapshotError(FlashError):
    """Raised when a snapshot cannot be created, read or restored."""

    default_category = ErrorCategory.FILE_SYSTEM


class CloudError(FlashError):
    """Base exception for remote store failures."""

    default_category = ErrorCategory.CLOUD


class ProviderUnavailableError(CloudError):
    """Raised by the stub provider that replaces a failed backend."""

    default_category = ErrorCategory.CLOUD


class AccessDeniedError(CloudError):
    """Raised when team access control rejects an operation."""

    default_category = ErrorCategory.CLOUD_PERMISSION


class ConfigError(FlashError):
    """Raised for invalid or missing configuration."""

    default_category = ErrorCategory.CONFIG_INVALID


class PackageError(FlashError):
    """Raised when a package cannot be located or is unusable."""

    default_category = ErrorCategory.PACKAGE_NOT_FOUND


class SchedulerError(FlashError):
    """Raised when a scheduled task cannot be run."""

    default_category = ErrorCategory.PROCESS_CRASH


_ERRNO_CATEGORIES = {
    errno.ENOENT: ErrorCategory.FILE_NOT_FOUND,
    errno.EACCES: ErrorCategory.PERMISSION_DENIED,
    errno.EPERM: ErrorCategory.PERMISSION_DENIED,
    errno.ENOSPC: ErrorCategory.DISK_SPACE,
    errno.EDQUOT: ErrorCategory.DISK_SPACE,
    errno.ETIMEDOUT: ErrorCategory.NETWORK_TIMEOUT,
    errno.ECONNREFUSED: ErrorCategory.NETWORK_CONNECTION,
    errno.ECONNRESET: ErrorCategory.NETWORK_CONNECTION,
    errno.ENETUNREACH: ErrorCategory.NETWORK,
    errno.EHOSTUNREACH: ErrorCategory.NETWORK,
}

# botocore ClientError codes
_CLOUD_CODES = {
    "InvalidAccessKeyId": ErrorCategory.CLOUD_AUTHENTICATION,
    "SignatureDoesNotMatch": ErrorCategory.CLOUD_AUTHENTICATION,
    "ExpiredToken": ErrorCategory.CLOUD_AUTHENTICATION,
    "InvalidToken": ErrorCategory.CLOUD_AUTHENTICATION,
    "AccessDenied": ErrorCategory.CLOUD_PERMISSION,
    "AllAccessDisabled": ErrorCategory.CLOUD_PERMISSION,
    "403": ErrorCategory.CLOUD_PERMISSION,
    "NoSuchKey": ErrorCategory.CLOUD_RESOURCE,
    "NoSuchBucket": ErrorCategory.CLOUD_RESOURCE,
    "NoSuchUpload": ErrorCategory.CLOUD_RESOURCE,
    "404": ErrorCategory.CLOUD_RESOURCE,
    "NotFound": ErrorCategory.CLOUD_RESOURCE,
    "SlowDown": ErrorCategory.CLOUD_QUOTA,
    "QuotaExceeded": ErrorCategory.CLOUD_QUOTA,
    "RequestLimitExceeded": ErrorCategory.CLOUD_QUOTA,
    "RequestTimeout": ErrorCategory.NETWORK_TIMEOUT,
}


def _classify_optional(exc: BaseException) -> Optional[ErrorCategory]:
    """Classify exceptions raised by requests and botocore."""
    if isinstance(exc, requests.RequestException):
        if isinstance(exc, requests.Timeout):
            return ErrorCategory.NETWORK_TIMEOUT
        if isinstance(exc, requests.ConnectionError):
            return ErrorCategory.NETWORK_CONNECTION
        return ErrorCategory.NETWORK

    if isinstance(exc, boto_exc.ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        return _CLOUD_CODES.get(code, ErrorCategory.CLOUD)
    if isinstance(exc, (boto_exc.NoCredentialsError, boto_exc.PartialCredentialsError)):
        return ErrorCategory.CLOUD_AUTHENTICATION
    if isinstance(exc, (boto_exc.ConnectTimeoutError, boto_exc.ReadTimeoutError)):
        return ErrorCategory.NETWORK_TIMEOUT
    if isinstance(exc, boto_exc.EndpointConnectionError):
        return ErrorCategory.NETWORK_CONNECTION
    if isinstance(exc, boto_exc.BotoCoreError):
        return ErrorCategory.CLOUD
    return None


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Map an exception to an :class:`ErrorCategory` by type.

    Args:
        exc: Any exception

    Returns:
        The category carried by a FlashError, or one derived from the
        exception class and errno.
    """
    if isinstance(exc, FlashError):
        return exc.category
    if isinstance(exc, MemoryError):
        return ErrorCategory.MEMORY_LIMIT
    if isinstance(exc, subprocess.TimeoutExpired):
        return ErrorCategory.PROCESS_TIMEOUT
    if isinstance(exc, subprocess.CalledProcessError):
        return ErrorCategory.PROCESS_CRASH
    if isinstance(exc, socket.gaierror):
        return ErrorCategory.NETWORK_DNS
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return ErrorCategory.NETWORK_TIMEOUT
    if isinstance(exc, (ConnectionRefusedError, ConnectionResetError)):
        return ErrorCategory.NETWORK_CONNECTION
    if isinstance(exc, ConnectionError):
        return ErrorCategory.NETWORK

    optional = _classify_optional(exc)
    if optional is not None:
        return optional

    if isinstance(exc, FileNotFoundError):
        return ErrorCategory.FILE_NOT_FOUND
    if isinstance(exc, PermissionError):
        return ErrorCategory.PERMISSION_DENIED
    if isinstance(exc, OSError):
        return _ERRNO_CATEGORIES.get(exc.errno, ErrorCategory.FILE_SYSTEM)
    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: BaseException,
    message: Optional[str] = None,
    error_cls: type = FlashError,
    context: Optional[Dict[str, Any]] = None,
) -> FlashError:
    """Convert any exception to a categorized FlashError.

    FlashErrors pass through unchanged.
    """
    if isinstance(exc, FlashError):
        return exc
    text = f"{message}: {exc}" if message else str(exc)
    return error_cls(text, classify_exception(exc), cause=exc, context=context)


def log_error(error: FlashError, verbose: bool = False) -> None:
    """Log a categorized error according to its recovery strategy."""
    recovery = error.recovery
    if recovery is RecoveryStrategy.FAIL:
        logger.error(f"[{error.category.value}] {error}")
    elif recovery is RecoveryStrategy.RETRY:
        logger.warning(f"{error} (retrying)")
    elif recovery is RecoveryStrategy.ALTERNATIVE:
        logger.warning(f"{error} (using alternative approach)")
    elif recovery is RecoveryStrategy.CONTINUE_DEGRADED:
        logger.warning(f"{error} (continuing with degraded functionality)")
    else:
        logger.debug(str(error))

    if verbose:
        logger.debug(error.report())
