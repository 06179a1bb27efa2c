"""Notification of the external analysis pipeline."""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from ecoscore.models import Submission

log = logging.getLogger(__name__)

_USER_AGENT = "EcoScore/1.0"
_TIMEOUT = 10.0


def build_payload(submission: Submission) -> dict[str, Any]:
    submitted_at = submission.created_at or datetime.now(UTC)
    if submitted_at.tzinfo is None:
        submitted_at = submitted_at.replace(tzinfo=UTC)
    return {
        "institutionName": submission.institution_name,
        "email": submission.submitter_email or None,
        "submissionId": submission.id,
        "submittedAt": submitted_at.isoformat(),
    }


class WebhookNotifier:
    """POSTs new submissions to the pipeline webhook.

    No retries; transport errors and non-2xx responses raise ``httpx.HTTPError``.
    The caller decides whether a failure matters (for submissions it does not).
    """

    def __init__(
        self,
        url: str | None,
        timeout: float = _TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def notify(self, submission: Submission) -> bool:
        """Send the submission; returns False when no webhook is configured."""
        if not self.url:
            log.info("No webhook configured, skipping notification for submission %s", submission.id)
            return False
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            headers={"User-Agent": _USER_AGENT},
            transport=self._transport,
        ) as client:
            resp = await client.post(self.url, json=build_payload(submission))
            resp.raise_for_status()
        log.info("Notified pipeline of submission %s", submission.id)
        return True
