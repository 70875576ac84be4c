"""AWS reference cloud provider."""
from .cloud import AwsCloudProvider
from .storage import S3StateStore

__all__ = ["AwsCloudProvider", "S3StateStore"]
