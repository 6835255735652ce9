"""Pipeline loader and validator.

Loads pipeline definitions from YAML files or dicts, validates them, and
keeps a registry of named pipelines (used by ``gantry exec`` and by the
in-process deployment trigger).

Load-time substitution uses ``${ENV:NAME}`` / ``${ENV:NAME:-default}`` so
that plain ``${NAME}`` references stay in place for run-time interpolation.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from gantry.errors import ConfigurationError
from gantry.pipeline.environment import VAR_PATTERN
from gantry.pipeline.schema import PipelineDefinition, Stage, StageKind, StepKind

logger = logging.getLogger(__name__)

_LOAD_TIME_VAR = re.compile(r"\$\{ENV:([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

# Names always present in a run's environment
BUILTIN_VARIABLES = {"PIPELINE_NAME", "RUN_ID", "BUILD_ID", "PIPELINE_STATUS"}


class PipelineLoader:
    """Load and validate pipeline definitions."""

    def load_from_yaml(self, yaml_path: Union[str, Path]) -> PipelineDefinition:
        """
        Load pipeline from YAML file.

        Args:
            yaml_path: Path to YAML file

        Returns:
            Validated PipelineDefinition

        Raises:
            FileNotFoundError: If file doesn't exist
            ConfigurationError: If the YAML is malformed or the pipeline is invalid
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Pipeline file not found: {yaml_path}")

        with open(yaml_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Malformed YAML in {yaml_path}: {e}")

        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Pipeline file {yaml_path} must contain a mapping")

        raw_config = self._resolve_env_vars(raw_config)
        raw_config.setdefault("name", yaml_path.stem)
        return self.load_from_dict(raw_config, source=str(yaml_path))

    def load_from_dict(self, config_dict: Dict[str, Any], source: str = "request") -> PipelineDefinition:
        """
        Load pipeline from dictionary (API requests, strategy builders).

        Raises:
            ConfigurationError: If pipeline is invalid
        """
        try:
            pipeline = PipelineDefinition(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid pipeline definition in {source}: {e}")
        except TypeError as e:
            raise ConfigurationError(f"Invalid pipeline definition in {source}: {e}")

        for warning in self.validate_pipeline(pipeline):
            logger.debug(f"{pipeline.name}: {warning}")
        return pipeline

    def _resolve_env_vars(self, value):
        """Resolve ``${ENV:NAME}`` references from the process environment."""
        if isinstance(value, str):
            def replace(match):
                name, default = match.group(1), match.group(2)
                if name in os.environ:
                    return os.environ[name]
                if default is not None:
                    return default
                logger.warning(f"Environment variable '{name}' is not set")
                return ""

            return _LOAD_TIME_VAR.sub(replace, value)
        elif isinstance(value, dict):
            return {k: self._resolve_env_vars(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [self._resolve_env_vars(item) for item in value]
        return value

    def validate_pipeline(self, pipeline: PipelineDefinition) -> List[str]:
        """
        Validate pipeline and return list of warnings/issues.

        Args:
            pipeline: Pipeline to validate

        Returns:
            List of warning messages (empty if no issues)
        """
        warnings = []
        parameter_names = {p.name for p in pipeline.parameters}
        known = set(BUILTIN_VARIABLES) | parameter_names | set(pipeline.environment)

        for path, stage in pipeline.root_stage().walk():
            if (
                stage.timeout_seconds is not None
                and pipeline.timeout_seconds is not None
                and stage.timeout_seconds > pipeline.timeout_seconds
            ):
                warnings.append(
                    f"Stage '{path}' timeout ({stage.timeout_seconds}s) exceeds the pipeline timeout "
                    f"({pipeline.timeout_seconds}s)"
                )

            if stage.input is not None and stage.input.timeout_seconds is None and stage.timeout_seconds is None:
                warnings.append(f"Input gate on '{path}' has no timeout (run may wait indefinitely)")

            if stage.when is not None and stage.when.field.startswith("params."):
                name = stage.when.field.split(".", 1)[1]
                if name not in parameter_names:
                    warnings.append(f"Stage '{path}' condition references undeclared parameter '{name}'")

            if stage.kind == StageKind.PARALLEL:
                locks = [child.lock for child in stage.stages if child.lock]
                for name in sorted({lock for lock in locks if locks.count(lock) > 1}):
                    warnings.append(f"Parallel branches of '{path}' share lock '{name}' and will run one at a time")

            if stage.kind == StageKind.LEAF:
                warnings.extend(self._leaf_warnings(path, stage, known))

            known |= set(stage.environment) | set(stage.outputs)

        return warnings

    @staticmethod
    def _leaf_warnings(path: str, stage: Stage, known: set) -> List[str]:
        warnings = []
        produced = set()
        for step in stage.steps:
            produced |= set(step.environment)
            if step.capture:
                produced.add(step.capture)

            if step.kind == StepKind.DOWNSTREAM_BUILD and not step.wait and not step.propagate:
                warnings.append(f"Stage '{path}': 'propagate' has no effect on '{step.job}' without 'wait'")

            for text in (step.message, step.job, step.repository, step.version, step.filename):
                for name in VAR_PATTERN.findall(text or ""):
                    if name not in known and name not in produced and name not in stage.environment:
                        warnings.append(f"Stage '{path}' references '${{{name}}}' which may be undefined")

        for name in stage.outputs:
            if name not in produced and name not in stage.environment:
                warnings.append(f"Stage '{path}' declares output '{name}' that no step sets")
        return warnings


class PipelineRegistry:
    """Registry for named pipelines loaded from a directory or registered in code."""

    def __init__(self, loader: Optional[PipelineLoader] = None):
        self.loader = loader or PipelineLoader()
        self._pipelines: Dict[str, PipelineDefinition] = {}

    def load_directory(self, directory: Union[str, Path]) -> List[str]:
        """Load every ``*.yaml``/``*.yml`` file in ``directory``; returns the names loaded."""
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning(f"Pipeline directory not found: {directory}")
            return []

        loaded = []
        for yaml_file in sorted(list(directory.glob("*.yaml")) + list(directory.glob("*.yml"))):
            pipeline = self.loader.load_from_yaml(yaml_file)
            self.register(pipeline.name, pipeline)
            loaded.append(pipeline.name)
        logger.info(f"Loaded {len(loaded)} pipeline(s) from {directory}")
        return loaded

    def register(self, name: str, pipeline: PipelineDefinition) -> None:
        self._pipelines[name] = pipeline

    def get_pipeline(self, name: str) -> Optional[PipelineDefinition]:
        return self._pipelines.get(name)

    def list_all(self) -> List[str]:
        return sorted(self._pipelines)

    def as_dict(self) -> Dict[str, PipelineDefinition]:
        return dict(self._pipelines)
