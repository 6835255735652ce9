"""Downstream job triggers."""

from .base import DeploymentTrigger, TriggerResult
from .http import HttpDeploymentTrigger

__all__ = ["DeploymentTrigger", "TriggerResult", "HttpDeploymentTrigger"]
