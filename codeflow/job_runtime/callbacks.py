"""Completion webhooks.

When a job with a ``callback`` reaches a terminal state, its result is POSTed
to the callback URL once.  With a shared secret the raw body is signed::

    x-workflow-signature: sha256=<hex HMAC-SHA256(secret, body)>

Delivery is fire-and-forget: one attempt, failures are logged and never
change the job.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import UTC, datetime
from typing import Any

import httpx
from loguru import logger

from codeflow.job_runtime.models.job import CallbackConfig, Job

SIGNATURE_HEADER = "x-workflow-signature"


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(body, secret), signature)


def build_callback_body(job: Job) -> dict[str, Any]:
    body: dict[str, Any] = {
        "jobId": job.id,
        "type": str(job.type),
        "status": str(job.status),
        "timestamp": datetime.now(UTC).isoformat(),
    }
    if job.error is not None:
        body["error"] = job.error
    else:
        body["result"] = job.result
    return body


class CallbackSender:
    """Posts terminal job states to the callback URL in the job payload."""

    def __init__(self, http: httpx.AsyncClient, *, timeout: float = 10.0) -> None:
        self._http = http
        self._timeout = timeout

    async def notify(self, job: Job) -> bool:
        """Deliver the callback for ``job`` if it has one.  Returns ``True`` on a 2xx."""
        raw = job.payload.get("callback")
        if not raw:
            return False
        callback = CallbackConfig.model_validate(raw)
        if not callback.url.startswith(("http://", "https://")):
            logger.warning("Job {}: ignoring non-http callback URL {}", job.id, callback.url)
            return False

        body = json.dumps(build_callback_body(job)).encode()
        headers = {
            "content-type": "application/json",
            "x-workflow-job-id": job.id,
            "x-workflow-job-type": str(job.type),
            "x-workflow-job-status": str(job.status),
        }
        if callback.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, callback.secret)

        try:
            response = await self._http.post(callback.url, content=body, headers=headers, timeout=self._timeout)
        except httpx.HTTPError as exc:
            logger.warning("Job {}: callback to {} failed: {}", job.id, callback.url, exc)
            return False
        if response.is_error:
            logger.warning("Job {}: callback to {} answered {}", job.id, callback.url, response.status_code)
            return False
        logger.info("Job {}: callback delivered to {}", job.id, callback.url)
        return True
