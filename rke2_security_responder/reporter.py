"""Deliver a fact-set to the collection endpoint over HTTP.

Delivery is best effort.  Transport errors and non-2xx replies are retried
with a linearly growing back-off; once the attempts are used up the last
failure is raised as :class:`DeliveryError`, which callers are expected to
log and otherwise ignore (air-gapped clusters never reach the endpoint).

A 2xx reply counts as delivered even when its body is not the structure we
expect; in that case :meth:`Reporter.send` returns ``None``.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from rke2_security_responder.config import (
    DEFAULT_ENDPOINT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_DELAY,
)
from rke2_security_responder.context import RunContext
from rke2_security_responder.models import DeliveryResponse, FactSet

logger = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    """Every delivery attempt failed."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class AttemptFailed(Exception):
    """A single delivery attempt failed and may be retried."""


class Reporter:
    """POST fact-sets to a collection endpoint.

    Parameters
    ----------
    endpoint : str
        Destination URL.
    timeout : float
        Total time budget per request in seconds, further bounded by *ctx*.
    max_attempts : int
        Attempts before giving up (the first try included).
    retry_delay : float
        Back-off unit; attempt *n* waits ``(n - 1) * retry_delay`` seconds.
    ctx : RunContext | None
        Run-wide deadline and cancellation flag.
    log : logging.Logger | None
        Defaults to this module's logger.
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        ctx: RunContext | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.ctx = ctx or RunContext()
        self.log = log or logger
        self._client = httpx.Client(
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "Reporter":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ── Delivery ──────────────────────────────────────────────────────────

    def _post(self, body: bytes) -> tuple[int, bytes]:
        """POST *body* and read the reply within one total time budget.

        httpx timeouts apply per phase, so the body is streamed and the
        overall deadline is checked between chunks.
        """
        budget = self.ctx.bound(self.timeout)
        deadline = time.monotonic() + budget
        request = self._client.build_request(
            "POST", self.endpoint, content=body, timeout=httpx.Timeout(budget)
        )
        resp = self._client.send(request, stream=True)
        try:
            chunks: list[bytes] = []
            for chunk in resp.iter_bytes():
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    raise httpx.ReadTimeout(
                        f"response not complete within {budget:g}s", request=request
                    )
            return resp.status_code, b"".join(chunks)
        finally:
            resp.close()

    def _attempt(self, body: bytes) -> tuple[int, bytes]:
        self.ctx.check()
        try:
            status, content = self._post(body)
        except httpx.HTTPError as exc:
            self.log.warning("Attempt failed: failed to send request: %s", exc)
            raise AttemptFailed(f"failed to send request: {exc}") from exc
        if not 200 <= status < 300:
            self.log.warning("Attempt failed: unexpected status code: %d", status)
            raise AttemptFailed(f"unexpected status code: {status}")
        return status, content

    def send(self, facts: FactSet) -> DeliveryResponse | None:
        """Deliver *facts* and return the endpoint's reply, if it parsed.

        Raises :class:`DeliveryError` when the endpoint is not a valid URL
        or every attempt failed, and
        :class:`~rke2_security_responder.context.OperationCancelled` when
        the run context stops the loop.
        """
        try:
            httpx.URL(self.endpoint)
        except httpx.InvalidURL as exc:
            raise DeliveryError(f"invalid endpoint {self.endpoint!r}: {exc}", attempts=0) from exc

        body = facts.to_json().encode()
        self.log.info("Sending data to %s", self.endpoint)
        self.log.debug("Request payload size=%d", len(body))

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_exception_type(AttemptFailed),
            sleep=self.ctx.sleep,
            before_sleep=before_sleep_log(self.log, logging.INFO),
        )
        try:
            status, content = retrying(self._attempt, body)
        except RetryError as exc:
            failure = exc.last_attempt.exception()
            raise DeliveryError(str(failure), attempts=self.max_attempts) from (
                failure.__cause__ if failure is not None else None
            )

        self.log.info("Response received status=%d", status)
        self.log.info("Data sent attempt=%d", retrying.statistics.get("attempt_number", 1))
        return self._parse(content)

    def _parse(self, content: bytes) -> DeliveryResponse | None:
        try:
            return DeliveryResponse.model_validate_json(content)
        except ValidationError as exc:
            self.log.debug("Ignoring unparseable response body: %s", exc)
            return None


def send(
    facts: FactSet,
    endpoint: str = DEFAULT_ENDPOINT,
    *,
    ctx: RunContext | None = None,
    log: logging.Logger | None = None,
) -> DeliveryResponse | None:
    """Deliver *facts* once with the default retry policy."""
    with Reporter(endpoint, ctx=ctx, log=log) as reporter:
        return reporter.send(facts)
