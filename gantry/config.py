import os
from typing import Any, Optional


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.environ.get(name)
    if value in (None, ""):
        return default
    return float(value)


class Config:
    SECRET_KEY: str = (
        os.environ.get("SECRET_KEY") or "gantry-secret-key-change-in-production"
    )
    DB_PATH: str = os.environ.get("GANTRY_DB_PATH") or os.path.join(os.getcwd(), "data", "gantry.db")
    WORKSPACE: str = os.environ.get("GANTRY_WORKSPACE") or os.path.join(os.getcwd(), "workspace")
    ARTIFACT_ROOT: str = os.environ.get("GANTRY_ARTIFACT_ROOT") or os.path.join(os.getcwd(), "artifacts")
    SERVICE_CONFIG: Optional[str] = os.environ.get("GANTRY_SERVICE_CONFIG")

    MAX_CONCURRENT_RUNS: int = int(os.environ.get("GANTRY_MAX_CONCURRENT_RUNS") or 4)
    DEFAULT_TIMEOUT_SECONDS: Optional[float] = _env_float("GANTRY_DEFAULT_TIMEOUT", None)
    KILL_GRACE_SECONDS: float = _env_float("GANTRY_KILL_GRACE_SECONDS", 5.0)

    NEXUS_URL: Optional[str] = os.environ.get("NEXUS_URL")
    NEXUS_USER: Optional[str] = os.environ.get("NEXUS_USER")
    NEXUS_PASSWORD: Optional[str] = os.environ.get("NEXUS_PASSWORD")
    TRIGGER_URL: Optional[str] = os.environ.get("TRIGGER_URL")
    NOTIFY_WEBHOOK_URL: Optional[str] = os.environ.get("NOTIFY_WEBHOOK_URL")

    @staticmethod
    def init_app(app: Any) -> None:
        os.makedirs(app.config.get("WORKSPACE", Config.WORKSPACE), exist_ok=True)
