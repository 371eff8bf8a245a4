"""Provider construction from configuration."""

import logging

from flashcache.cloud.cloudfiles_provider import SCHEMES, CloudFilesProvider
from flashcache.cloud.config import ProviderConfig
from flashcache.cloud.provider import CloudProvider, UnavailableProvider
from flashcache.cloud.s3_provider import S3Provider
from flashcache.errors import CloudError, FlashError, log_error, wrap_exception

logger = logging.getLogger(__name__)


def create_provider(config: ProviderConfig) -> CloudProvider:
    """Build the provider for ``config.type`` without connecting.

    Raises:
        CloudError: If the type is unknown or the settings are incomplete
    """
    provider_type = (config.type or "").lower()
    if provider_type == "s3":
        return S3Provider(
            bucket=config.bucket,
            region=config.region,
            endpoint=config.endpoint,
            prefix=config.prefix,
            credentials=config.credentials,
        )
    if provider_type in SCHEMES:
        return CloudFilesProvider(
            type=provider_type,
            bucket=config.bucket,
            prefix=config.prefix,
            credentials=config.credentials,
        )
    raise CloudError(f"Unsupported cloud provider type: {config.type}")


def init_provider(config: ProviderConfig) -> CloudProvider:
    """Create and initialize a provider, degrading instead of failing.

    Returns:
        The initialized provider, or an :class:`UnavailableProvider` whose
        operations raise ``ProviderUnavailableError`` when creation or
        initialization failed. The cause is logged once, here.
    """
    try:
        provider = create_provider(config)
        provider.init()
        return provider
    except (FlashError, OSError, ValueError) as e:
        error = wrap_exception(e, f"Cannot initialize {config.type} provider", CloudError)
        log_error(error)
        return UnavailableProvider(str(error), cause=e)
