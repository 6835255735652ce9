"""HTTP connectors for external services."""

from gantry.connectors.base import BaseConnector, TokenBucket

__all__ = ["BaseConnector", "TokenBucket"]
