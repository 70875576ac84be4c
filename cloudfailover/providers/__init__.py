"""Cloud provider factory."""

from __future__ import annotations

from typing import Any

from cloudfailover.constants import CloudEnvironment
from cloudfailover.errors import ConfigurationError

from .aws import AwsCloudProvider
from .base import CloudProvider, ProviderOptions

__all__ = ["AwsCloudProvider", "CloudProvider", "ProviderOptions", "get_cloud_provider"]


def get_cloud_provider(environment: CloudEnvironment | str, **kwargs: Any) -> CloudProvider:
    """Provider implementation for ``environment``, constructed with ``kwargs``."""
    try:
        env = CloudEnvironment(environment)
    except ValueError:
        raise ConfigurationError(f"Unsupported environment: {environment}") from None
    if env is CloudEnvironment.AWS:
        return AwsCloudProvider(**kwargs)
    raise ConfigurationError(f"Cloud provider not implemented for environment: {env.value}")
