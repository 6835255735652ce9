"""Process runners: execute the external commands a stage's steps name."""

from gantry.runners.base import ProcessResult, ProcessRunner
from gantry.runners.subprocess_runner import SubprocessRunner

__all__ = ["ProcessResult", "ProcessRunner", "SubprocessRunner"]
