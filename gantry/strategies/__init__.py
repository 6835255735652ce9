"""Pipeline strategies keyed by application type."""

from .router import ApplicationType, RunConfig, StrategyRouter, default_router
from .infrastructure import InfrastructureConfig, build_infrastructure

__all__ = [
    "ApplicationType",
    "RunConfig",
    "StrategyRouter",
    "default_router",
    "InfrastructureConfig",
    "build_infrastructure",
]
