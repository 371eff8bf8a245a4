"""Tests for error categories, recovery strategies and classification."""

import errno
import socket
import subprocess

import pytest
import requests
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from flashcache.errors import (
    AccessDeniedError,
    CacheDiskFullError,
    CloudError,
    ErrorCategory,
    FlashError,
    PackageError,
    RecoveryStrategy,
    classify_exception,
    recovery_for,
    wrap_exception,
)


def client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "HeadObject")


class TestRecoveryStrategies:
    """Test the category to strategy mapping."""

    @pytest.mark.parametrize(
        "category",
        [
            ErrorCategory.NETWORK_TIMEOUT,
            ErrorCategory.NETWORK_CONNECTION,
            ErrorCategory.NETWORK_DNS,
            ErrorCategory.NETWORK,
            ErrorCategory.CLOUD_RESOURCE,
            ErrorCategory.PROCESS_TIMEOUT,
        ],
    )
    def test_retry_categories(self, category):
        """Transient failures are retried."""
        assert recovery_for(category) is RecoveryStrategy.RETRY

    @pytest.mark.parametrize(
        "category",
        [
            ErrorCategory.CLOUD_AUTHENTICATION,
            ErrorCategory.CLOUD_PERMISSION,
            ErrorCategory.CLOUD_QUOTA,
            ErrorCategory.CLOUD,
            ErrorCategory.PACKAGE_NOT_FOUND,
        ],
    )
    def test_alternative_categories(self, category):
        assert recovery_for(category) is RecoveryStrategy.ALTERNATIVE

    def test_config_degrades(self):
        """Configuration problems continue with degraded functionality."""
        for category in (ErrorCategory.CONFIG, ErrorCategory.CONFIG_INVALID, ErrorCategory.CONFIG_MISSING):
            assert recovery_for(category) is RecoveryStrategy.CONTINUE_DEGRADED

    def test_everything_else_fails(self):
        for category in (
            ErrorCategory.DISK_SPACE,
            ErrorCategory.PERMISSION_DENIED,
            ErrorCategory.MEMORY_LIMIT,
            ErrorCategory.UNKNOWN,
        ):
            assert recovery_for(category) is RecoveryStrategy.FAIL


class TestClassification:
    """Test exception classification by type."""

    def test_flash_error_keeps_category(self):
        error = FlashError("boom", ErrorCategory.CLOUD_QUOTA)
        assert classify_exception(error) is ErrorCategory.CLOUD_QUOTA

    def test_subclass_default_categories(self):
        assert CacheDiskFullError("full").category is ErrorCategory.DISK_SPACE
        assert AccessDeniedError("no").category is ErrorCategory.CLOUD_PERMISSION
        assert PackageError("missing").category is ErrorCategory.PACKAGE_NOT_FOUND

    @pytest.mark.parametrize(
        "exc, category",
        [
            (FileNotFoundError("x"), ErrorCategory.FILE_NOT_FOUND),
            (PermissionError("x"), ErrorCategory.PERMISSION_DENIED),
            (OSError(errno.ENOSPC, "No space left"), ErrorCategory.DISK_SPACE),
            (OSError(errno.EIO, "I/O error"), ErrorCategory.FILE_SYSTEM),
            (TimeoutError("x"), ErrorCategory.NETWORK_TIMEOUT),
            (ConnectionRefusedError("x"), ErrorCategory.NETWORK_CONNECTION),
            (socket.gaierror("x"), ErrorCategory.NETWORK_DNS),
            (MemoryError(), ErrorCategory.MEMORY_LIMIT),
            (subprocess.TimeoutExpired(["npm"], 1), ErrorCategory.PROCESS_TIMEOUT),
            (subprocess.CalledProcessError(1, ["npm"]), ErrorCategory.PROCESS_CRASH),
            (KeyError("x"), ErrorCategory.UNKNOWN),
        ],
    )
    def test_builtin_exceptions(self, exc, category):
        assert classify_exception(exc) is category

    def test_requests_exceptions(self):
        """requests failures map to network categories."""
        assert classify_exception(requests.Timeout()) is ErrorCategory.NETWORK_TIMEOUT
        assert classify_exception(requests.ConnectionError()) is ErrorCategory.NETWORK_CONNECTION
        assert classify_exception(requests.HTTPError()) is ErrorCategory.NETWORK

    def test_botocore_client_error_codes(self):
        """S3 error codes map to cloud categories."""
        assert classify_exception(client_error("AccessDenied")) is ErrorCategory.CLOUD_PERMISSION
        assert classify_exception(client_error("InvalidAccessKeyId")) is ErrorCategory.CLOUD_AUTHENTICATION
        assert classify_exception(client_error("NoSuchKey")) is ErrorCategory.CLOUD_RESOURCE
        assert classify_exception(client_error("SlowDown")) is ErrorCategory.CLOUD_QUOTA
        assert classify_exception(client_error("Weird")) is ErrorCategory.CLOUD

    def test_botocore_other_errors(self):
        assert classify_exception(NoCredentialsError()) is ErrorCategory.CLOUD_AUTHENTICATION
        assert (
            classify_exception(EndpointConnectionError(endpoint_url="http://x"))
            is ErrorCategory.NETWORK_CONNECTION
        )


class TestWrapException:
    """Test conversion to FlashError."""

    def test_flash_errors_pass_through(self):
        error = CloudError("remote down")
        assert wrap_exception(error, "ignored") is error

    def test_wraps_with_message_and_cause(self):
        cause = OSError(errno.ENOSPC, "No space left")
        error = wrap_exception(cause, "Writing entry failed", PackageError)

        assert isinstance(error, PackageError)
        assert error.category is ErrorCategory.DISK_SPACE
        assert error.cause is cause
        assert str(error).startswith("Writing entry failed: ")
        assert error.recovery is RecoveryStrategy.FAIL
        assert not error.recoverable

    def test_retryable_property(self):
        assert wrap_exception(TimeoutError("slow")).retryable
        assert not wrap_exception(ValueError("bad")).retryable

    def test_report_includes_cause_and_context(self):
        try:
            raise FileNotFoundError("package.json")
        except FileNotFoundError as e:
            error = wrap_exception(e, "Reading manifest", context={"project": "/app"})

        report = error.report()
        assert "Category: file-not-found" in report
        assert "Original error" in report
        assert "Original traceback" in report
        assert "/app" in report
