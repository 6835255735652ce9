"""Strategy router: application type -> pipeline builder.

The router is an explicit registry keyed by ``ApplicationType``. Lookup is an
exact match; an unknown application fails with ``UnrecognizedStrategy``
before any graph is built, and ``ensure_complete()`` lets the service verify
at startup that every application type has a builder.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from gantry.errors import ConfigurationError, UnrecognizedStrategy
from gantry.pipeline.schema import PipelineDefinition

logger = logging.getLogger(__name__)


class ApplicationType(str, Enum):
    """Application stacks with a registered pipeline strategy."""
    NODEJS_VM = "nodeJSVM"      # Node.js service deployed to virtual machines
    NODEJS_EKS = "nodeJSEKS"    # Node.js service deployed to Kubernetes (EKS)
    JAVA_VM = "javaVM"          # Java service deployed to virtual machines
    JAVA_EKS = "javaEKS"        # Java service deployed to Kubernetes (EKS)


class RunConfig(BaseModel):
    """A run request: which application to build and how."""
    model_config = ConfigDict(extra="forbid")

    application: ApplicationType
    component: str = Field(..., pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$", description="Component name (e.g., 'cart')")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Pipeline parameter values")
    branch: str = "main"
    environment: str = Field("dev", description="Target environment for the deploy stage")
    artifact_repository: Optional[str] = None
    deploy_job: Optional[str] = None
    registry: Optional[str] = Field(None, description="Container registry for EKS strategies")


PipelineBuilder = Callable[[RunConfig], PipelineDefinition]


class StrategyRouter:
    """Registry of pipeline builders keyed by application type."""

    def __init__(self):
        self._builders: Dict[ApplicationType, PipelineBuilder] = {}

    def register(self, key: Union[ApplicationType, str], builder: PipelineBuilder) -> None:
        """
        Register a builder for an application type.

        Raises:
            ConfigurationError: If ``key`` is not a known application type
        """
        try:
            application = ApplicationType(key)
        except ValueError:
            raise ConfigurationError(
                f"Cannot register strategy for unknown application type '{key}'. "
                f"Valid types: {[a.value for a in ApplicationType]}"
            )
        if application in self._builders:
            logger.warning(f"Replacing pipeline strategy for {application.value}")
        self._builders[application] = builder

    def keys(self) -> List[str]:
        return [a.value for a in ApplicationType if a in self._builders]

    def ensure_complete(self) -> None:
        """
        Verify that every application type has a builder.

        Raises:
            ConfigurationError: Listing the application types without a builder
        """
        missing = [a.value for a in ApplicationType if a not in self._builders]
        if missing:
            raise ConfigurationError(f"No pipeline strategy registered for: {', '.join(missing)}")

    def resolve(self, config_map: Mapping[str, Any]) -> RunConfig:
        """
        Validate a run request.

        Raises:
            UnrecognizedStrategy: If ``application`` is missing or has no builder
            ConfigurationError: If the other fields are invalid
        """
        application = config_map.get("application") if isinstance(config_map, Mapping) else None
        try:
            key = ApplicationType(application)
        except ValueError:
            raise UnrecognizedStrategy(application)
        if key not in self._builders:
            raise UnrecognizedStrategy(application)

        try:
            return RunConfig(**config_map)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid run request: {e}")

    def build(self, config_map: Union[Mapping[str, Any], RunConfig]) -> PipelineDefinition:
        """
        Build the pipeline for a run request.

        Args:
            config_map: Run request; must contain ``application``

        Returns:
            PipelineDefinition built by the registered strategy

        Raises:
            UnrecognizedStrategy: Unknown application; no graph is built
            ConfigurationError: Invalid request fields
        """
        config = config_map if isinstance(config_map, RunConfig) else self.resolve(config_map)
        if config.application not in self._builders:
            raise UnrecognizedStrategy(config.application.value)
        definition = self._builders[config.application](config)
        logger.info(
            f"Built pipeline {definition.name} for {config.application.value}/{config.component} "
            f"({len(definition.stages)} top-level stages)"
        )
        return definition


def default_router() -> StrategyRouter:
    """Router with the built-in Node.js and Java strategies registered."""
    from gantry.strategies.java import build_java_eks, build_java_vm
    from gantry.strategies.nodejs import build_nodejs_eks, build_nodejs_vm

    router = StrategyRouter()
    router.register(ApplicationType.NODEJS_VM, build_nodejs_vm)
    router.register(ApplicationType.NODEJS_EKS, build_nodejs_eks)
    router.register(ApplicationType.JAVA_VM, build_java_vm)
    router.register(ApplicationType.JAVA_EKS, build_java_eks)
    router.ensure_complete()
    return router
