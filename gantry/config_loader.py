"""YAML service configuration with environment variable resolution.

Expected format (every section optional; environment defaults from
``gantry.config.Config`` fill the gaps):

```yaml
workspace: ./workspace
max_concurrent_runs: 4
default_timeout: 2h
kill_grace_seconds: 5
pipelines_dir: ./pipelines

artifact_store:
  type: nexus            # nexus | filesystem | memory
  url: ${NEXUS_URL}
  user: ${NEXUS_USER}
  password: ${NEXUS_PASSWORD}

trigger:
  type: http             # http | local
  url: ${TRIGGER_URL}
  poll_interval: 5

notifier:
  type: webhook          # webhook | log
  url: ${NOTIFY_WEBHOOK_URL}
  channel: "#deploys"

scanners:
  - name: sonar
    command: sonar-scanner
    findings_pattern: "^ERROR"
```
"""
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from gantry.artifacts import FileSystemArtifactStore, InMemoryArtifactStore, NexusArtifactStore
from gantry.config import Config
from gantry.errors import ConfigurationError
from gantry.notifiers import LogNotifier, WebhookNotifier
from gantry.pipeline.executor import PipelineEngine
from gantry.pipeline.loader import PipelineRegistry
from gantry.runners import ProcessRunner, SubprocessRunner
from gantry.scanners import CommandScanner, ScannerRegistry
from gantry.triggers import HttpDeploymentTrigger
from gantry.triggers.local import LocalDeploymentTrigger
from gantry.utils.helpers import parse_duration

logger = logging.getLogger(__name__)

ARTIFACT_STORE_TYPES = {"nexus", "filesystem", "memory"}
TRIGGER_TYPES = {"http", "local"}
NOTIFIER_TYPES = {"webhook", "log"}


@dataclass
class Capabilities:
    """Everything a PipelineEngine needs, built from service configuration."""
    runner: ProcessRunner
    artifact_store: Any
    trigger: Any
    notifier: Any
    scanners: ScannerRegistry
    pipelines: PipelineRegistry
    workspace: str
    max_concurrent_runs: int = 4
    default_timeout: Optional[float] = None


class ConfigLoader:
    """Load and parse YAML configuration with environment variable support."""

    ENV_VAR_PATTERN = re.compile(r'\$\{([A-Z_][A-Z0-9_]*)\}')

    @classmethod
    def resolve_env_vars(cls, value: Any) -> Any:
        """
        Resolve environment variables in configuration values.

        Supports ${ENV_VAR} syntax; unset variables become empty strings.
        """
        if isinstance(value, str):
            def replace_env(match):
                var_name = match.group(1)
                env_value = os.environ.get(var_name)
                if env_value is None:
                    logger.warning(f"Environment variable '{var_name}' not found, using empty string")
                    return ""
                return env_value

            return cls.ENV_VAR_PATTERN.sub(replace_env, value)

        elif isinstance(value, dict):
            return {k: cls.resolve_env_vars(v) for k, v in value.items()}

        elif isinstance(value, list):
            return [cls.resolve_env_vars(item) for item in value]

        else:
            return value

    @classmethod
    def load_yaml(cls, config_path: Path) -> Dict[str, Any]:
        """
        Load YAML configuration file with environment variable resolution.

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigurationError: If the YAML is malformed or not a mapping
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Malformed YAML in {config_path}: {e}")

        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")

        return cls.resolve_env_vars(raw_config)

    @classmethod
    def load_service_config(cls, config_path: Optional[Path] = None) -> Dict[str, Any]:
        """
        Load the service configuration, falling back to environment defaults.

        Args:
            config_path: YAML file; defaults to GANTRY_SERVICE_CONFIG when set

        Returns:
            Validated configuration dict
        """
        config_path = config_path or Config.SERVICE_CONFIG
        config = cls.load_yaml(Path(config_path)) if config_path else {}
        config = cls._apply_defaults(config)
        cls._validate_service_config(config)
        return config

    @classmethod
    def _apply_defaults(cls, config: Dict[str, Any]) -> Dict[str, Any]:
        config = dict(config)
        config.setdefault("workspace", Config.WORKSPACE)
        config.setdefault("max_concurrent_runs", Config.MAX_CONCURRENT_RUNS)
        config.setdefault("default_timeout", Config.DEFAULT_TIMEOUT_SECONDS)
        config.setdefault("kill_grace_seconds", Config.KILL_GRACE_SECONDS)

        if "artifact_store" not in config:
            if Config.NEXUS_URL:
                config["artifact_store"] = {
                    "type": "nexus",
                    "url": Config.NEXUS_URL,
                    "user": Config.NEXUS_USER,
                    "password": Config.NEXUS_PASSWORD,
                }
            else:
                config["artifact_store"] = {"type": "filesystem", "root": Config.ARTIFACT_ROOT}

        if "trigger" not in config:
            if Config.TRIGGER_URL:
                config["trigger"] = {"type": "http", "url": Config.TRIGGER_URL}
            else:
                config["trigger"] = {"type": "local"}

        if "notifier" not in config:
            if Config.NOTIFY_WEBHOOK_URL:
                config["notifier"] = {"type": "webhook", "url": Config.NOTIFY_WEBHOOK_URL}
            else:
                config["notifier"] = {"type": "log"}

        config.setdefault("scanners", [])
        return config

    @classmethod
    def _validate_service_config(cls, config: Dict[str, Any]):
        """Validate service configuration."""
        store = config["artifact_store"]
        if store.get("type") not in ARTIFACT_STORE_TYPES:
            raise ConfigurationError(f"artifact_store.type must be one of {sorted(ARTIFACT_STORE_TYPES)}")
        if store["type"] == "nexus" and not store.get("url"):
            raise ConfigurationError("artifact_store of type 'nexus' requires 'url'")

        trigger = config["trigger"]
        if trigger.get("type") not in TRIGGER_TYPES:
            raise ConfigurationError(f"trigger.type must be one of {sorted(TRIGGER_TYPES)}")
        if trigger["type"] == "http" and not trigger.get("url"):
            raise ConfigurationError("trigger of type 'http' requires 'url'")

        notifier = config["notifier"]
        if notifier.get("type") not in NOTIFIER_TYPES:
            raise ConfigurationError(f"notifier.type must be one of {sorted(NOTIFIER_TYPES)}")
        if notifier["type"] == "webhook" and not notifier.get("url"):
            raise ConfigurationError("notifier of type 'webhook' requires 'url'")

        names = set()
        for scanner in config["scanners"]:
            if 'name' not in scanner:
                raise ConfigurationError("Scanner missing 'name' field")
            if 'command' not in scanner:
                raise ConfigurationError(f"Scanner '{scanner['name']}' missing 'command' field")
            if scanner['name'] in names:
                raise ConfigurationError(f"Duplicate scanner '{scanner['name']}'")
            names.add(scanner['name'])

        try:
            if int(config["max_concurrent_runs"]) < 1:
                raise ConfigurationError("max_concurrent_runs must be at least 1")
            parse_duration(config["default_timeout"])
            float(config["kill_grace_seconds"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid service configuration: {e}")

    @classmethod
    def build_capabilities(cls, config: Optional[Dict[str, Any]] = None) -> Capabilities:
        """
        Construct runner, artifact store, trigger, notifier and scanners.

        Args:
            config: Output of ``load_service_config`` (loaded when omitted)
        """
        if config is None:
            config = cls.load_service_config()

        runner = SubprocessRunner(kill_grace_seconds=float(config["kill_grace_seconds"]))

        store_config = config["artifact_store"]
        if store_config["type"] == "nexus":
            auth = None
            if store_config.get("user"):
                auth = (store_config["user"], store_config.get("password") or "")
            artifact_store = NexusArtifactStore(store_config["url"], auth=auth)
        elif store_config["type"] == "filesystem":
            artifact_store = FileSystemArtifactStore(store_config.get("root") or Config.ARTIFACT_ROOT)
        else:
            artifact_store = InMemoryArtifactStore()

        pipelines = PipelineRegistry()
        if config.get("pipelines_dir"):
            pipelines.load_directory(config["pipelines_dir"])

        trigger_config = config["trigger"]
        if trigger_config["type"] == "http":
            auth = None
            if trigger_config.get("user"):
                auth = (trigger_config["user"], trigger_config.get("password") or "")
            trigger = HttpDeploymentTrigger(
                trigger_config["url"],
                auth=auth,
                poll_interval=float(trigger_config.get("poll_interval", 5.0)),
            )
        else:
            trigger = LocalDeploymentTrigger(jobs=pipelines.as_dict())

        notifier_config = config["notifier"]
        if notifier_config["type"] == "webhook":
            notifier = WebhookNotifier(notifier_config["url"], default_channel=notifier_config.get("channel"))
        else:
            notifier = LogNotifier()

        scanners = ScannerRegistry()
        for scanner in config["scanners"]:
            scanners.register(CommandScanner(
                name=scanner["name"],
                runner=runner,
                command=scanner["command"],
                findings_pattern=scanner.get("findings_pattern"),
            ))

        logger.info(
            f"Capabilities: artifact_store={store_config['type']}, trigger={trigger_config['type']}, "
            f"notifier={notifier_config['type']}, scanners={scanners.names()}"
        )
        return Capabilities(
            runner=runner,
            artifact_store=artifact_store,
            trigger=trigger,
            notifier=notifier,
            scanners=scanners,
            pipelines=pipelines,
            workspace=str(config["workspace"]),
            max_concurrent_runs=int(config["max_concurrent_runs"]),
            default_timeout=parse_duration(config["default_timeout"]),
        )


def build_engine(capabilities: Capabilities, event_bus=None, approvals=None) -> PipelineEngine:
    """
    Wire a PipelineEngine to configured capabilities.

    An in-process deployment trigger is attached to the new engine so
    downstream runs share its approvals and locks.
    """
    engine = PipelineEngine(
        runner=capabilities.runner,
        artifact_store=capabilities.artifact_store,
        trigger=capabilities.trigger,
        scanners=capabilities.scanners,
        notifier=capabilities.notifier,
        approvals=approvals,
        event_bus=event_bus,
        workspace=capabilities.workspace,
        default_timeout=capabilities.default_timeout,
    )
    if isinstance(capabilities.trigger, LocalDeploymentTrigger):
        capabilities.trigger.attach(engine)
    return engine
