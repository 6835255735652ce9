"""HTTP deployment trigger.

Contract:
    POST /jobs/{job}/build           {"parameters": {...}, "wait": bool} -> {"status", "runId"}
    GET  /jobs/{job}/runs/{run_id}   -> {"status", "exitCode"?}
"""

import logging
import time
from typing import Mapping, Optional, Tuple

import requests

from gantry.connectors.base import BaseConnector
from gantry.errors import TriggerError
from gantry.pipeline.cancellation import CancellationToken
from gantry.triggers.base import QUEUED, DeploymentTrigger, TriggerResult
from gantry.utils.http_errors import raise_for_trigger_status
from gantry.utils.retry import RetryConfig

logger = logging.getLogger(__name__)


class HttpDeploymentTrigger(BaseConnector, DeploymentTrigger):
    """Triggers jobs on a remote job server and polls them to completion."""

    def __init__(
        self,
        base_url: str,
        auth: Optional[Tuple[str, str]] = None,
        poll_interval: float = 5.0,
        timeout_seconds: int = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            base_url=base_url,
            auth=auth,
            timeout_seconds=timeout_seconds,
            retry_config=retry_config,
            session=session,
        )
        self.poll_interval = poll_interval

    def trigger(
        self,
        job_ref: str,
        parameters: Mapping[str, str],
        wait: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> TriggerResult:
        response = self.request(
            "POST",
            self.url("jobs", job_ref, "build"),
            json={"parameters": dict(parameters), "wait": wait},
        )
        raise_for_trigger_status(response, job_ref)
        result = self._parse(job_ref, response)
        logger.info(f"Triggered {job_ref}: run {result.run_id} ({result.status})")

        if not wait or result.finished:
            return result
        if not result.run_id:
            raise TriggerError(f"Job server did not return a run id for '{job_ref}'")

        while not result.finished:
            if token is not None:
                token.wait(self.poll_interval)
                token.raise_if_cancelled()
            else:
                time.sleep(self.poll_interval)
            response = self.request("GET", self.url("jobs", job_ref, "runs", result.run_id))
            raise_for_trigger_status(response, job_ref)
            result = self._parse(job_ref, response, run_id=result.run_id)

        logger.info(f"Downstream {job_ref} run {result.run_id} finished: {result.status}")
        return result

    @staticmethod
    def _parse(job_ref: str, response: requests.Response, run_id: Optional[str] = None) -> TriggerResult:
        try:
            body = response.json()
        except ValueError as e:
            raise TriggerError(f"Job server returned invalid JSON for '{job_ref}': {e}")
        return TriggerResult(
            job=job_ref,
            status=str(body.get("status") or QUEUED).upper(),
            run_id=body.get("runId") or run_id,
            exit_code=body.get("exitCode"),
            details=body,
        )
