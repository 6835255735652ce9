"""HTTP API blueprints."""

from gantry.api.routes import health_bp, runs_bp

__all__ = ["health_bp", "runs_bp"]
