"""Source-control hosting adapters."""

from hours.adapters.base import RemoteAPIError, SourceControlAdapter
from hours.adapters.bitbucket import BitbucketAdapter

__all__ = ["BitbucketAdapter", "RemoteAPIError", "SourceControlAdapter"]
