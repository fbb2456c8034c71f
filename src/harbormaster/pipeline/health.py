"""Health verification and extended monitoring for deployed services.

Two checking strategies answer two different questions:

- HealthVerifier.verify() asks whether a freshly started instance is viable at
  all. It retries up to max_attempts with a fixed interval and returns as soon
  as one probe succeeds.
- ExtendedMonitor.monitor() asks whether the running system stays stable over
  a longer window. Every iteration is a single probe; isolated failures are
  tolerated, a run of consecutive failures fails fast.

A probe is healthy iff the endpoint answers with status code 200. The body is
not inspected.

Example usage:
    >>> from harbormaster.pipeline.health import HealthVerifier, ExtendedMonitor
    >>>
    >>> verifier = HealthVerifier(timeout_seconds=5.0)
    >>> result = verifier.verify("http://localhost:8080", max_attempts=30, interval_seconds=2)
    >>> if result.healthy:
    ...     monitor = ExtendedMonitor(verifier)
    ...     outcome = monitor.monitor("http://localhost:8080", duration_minutes=5,
    ...                               interval_seconds=30, max_consecutive_failures=3)
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from harbormaster.logging import get_logger

DEFAULT_ENDPOINT = "/health"
VERSION_ENDPOINT = "/version"


class HealthStatus(str, Enum):
    """Verdict of the Health Verifier.

    Attributes:
        HEALTHY: A probe returned 200 within the attempt budget
        UNHEALTHY: Every attempt failed
    """

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class MonitorStatus(str, Enum):
    """Verdict of the Extended Monitor.

    Attributes:
        STABLE: The window completed without a run of consecutive failures
        UNSTABLE: Consecutive failures reached the configured maximum
    """

    STABLE = "stable"
    UNSTABLE = "unstable"


class HealthVerdict(BaseModel):
    """Result of one probe.

    Attributes:
        healthy: Whether the endpoint answered 200
        url: Probed URL
        status_code: HTTP status code (None if the request failed)
        latency_seconds: Time until the response or the error
        error: Error description for failed probes
        checked_at: ISO 8601 timestamp of the probe
    """

    healthy: bool = Field(description="Probe outcome")
    url: str = Field(description="Probed URL")
    status_code: int | None = Field(default=None, description="HTTP status code")
    latency_seconds: float = Field(default=0.0, ge=0.0, description="Probe latency")
    error: str | None = Field(default=None, description="Error message")
    checked_at: str = Field(description="Probe timestamp")


class VerificationResult(BaseModel):
    """Outcome of HealthVerifier.verify().

    Attributes:
        status: HEALTHY or UNHEALTHY
        url: Probed URL
        attempts: Probes issued
        max_attempts: Attempt budget
        last_verdict: The final probe's verdict
    """

    status: HealthStatus = Field(description="Verification verdict")
    url: str = Field(description="Probed URL")
    attempts: int = Field(default=0, ge=0, description="Probes issued")
    max_attempts: int = Field(default=0, ge=0, description="Attempt budget")
    last_verdict: HealthVerdict | None = Field(default=None, description="Last probe")

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class MonitorResult(BaseModel):
    """Outcome of ExtendedMonitor.monitor().

    Attributes:
        status: STABLE or UNSTABLE
        url: Probed URL
        planned_checks: floor(duration * 60 / interval)
        checks_performed: Probes actually issued
        total_failures: Failed probes in the window
        consecutive_failures: Failure run length when monitoring ended
    """

    status: MonitorStatus = Field(description="Monitoring verdict")
    url: str = Field(description="Probed URL")
    planned_checks: int = Field(default=0, ge=0, description="Checks in the window")
    checks_performed: int = Field(default=0, ge=0, description="Checks issued")
    total_failures: int = Field(default=0, ge=0, description="Failed checks")
    consecutive_failures: int = Field(default=0, ge=0, description="Failure streak")

    @property
    def stable(self) -> bool:
        return self.status == MonitorStatus.STABLE


def build_url(base_url: str, endpoint: str) -> str:
    """Join a base URL and an endpoint with exactly one slash between them."""
    return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def planned_checks(duration_minutes: float, interval_seconds: float) -> int:
    """Number of probes in a monitoring window."""
    if interval_seconds <= 0:
        raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
    return max(0, math.floor(duration_minutes * 60 / interval_seconds))


class HealthVerifier:
    """Retrying HTTP liveness gate.

    Attributes:
        timeout_seconds: Timeout for a single probe
        logger: Structured logger instance
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize HealthVerifier.

        Args:
            client: HTTP client to probe with (created lazily when omitted)
            timeout_seconds: Timeout for a single probe
            sleep: Blocking wait between attempts
        """
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        self._client = client
        self._owns_client = client is None
        self.sleep = sleep

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._client

    def probe(self, url: str) -> HealthVerdict:
        """Issue one GET and classify the response.

        Never raises for network conditions: connection errors and timeouts
        are unhealthy verdicts.
        """
        start_time = time.monotonic()
        checked_at = datetime.now(timezone.utc).isoformat()

        try:
            response = self._get_client().get(url, timeout=self.timeout_seconds)
        except httpx.TimeoutException as e:
            self.logger.debug("health_probe_timeout", url=url, error=str(e))
            return HealthVerdict(
                healthy=False,
                url=url,
                latency_seconds=time.monotonic() - start_time,
                error=f"Timed out after {self.timeout_seconds}s",
                checked_at=checked_at,
            )
        except httpx.HTTPError as e:
            self.logger.debug(
                "health_probe_connection_error",
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            return HealthVerdict(
                healthy=False,
                url=url,
                latency_seconds=time.monotonic() - start_time,
                error=f"Connection error: {e}",
                checked_at=checked_at,
            )

        latency = time.monotonic() - start_time
        healthy = response.status_code == 200
        return HealthVerdict(
            healthy=healthy,
            url=url,
            status_code=response.status_code,
            latency_seconds=latency,
            error=None if healthy else f"Unexpected status code: {response.status_code}",
            checked_at=checked_at,
        )

    def verify(
        self,
        base_url: str,
        endpoint: str = DEFAULT_ENDPOINT,
        max_attempts: int = 30,
        interval_seconds: float = 2.0,
    ) -> VerificationResult:
        """Probe until the endpoint answers 200 or the attempt budget runs out.

        Args:
            base_url: Service base URL
            endpoint: Liveness endpoint path
            max_attempts: Probes before giving up
            interval_seconds: Wait after each failed probe except the last

        Returns:
            VerificationResult, HEALTHY on the first 200
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        url = build_url(base_url, endpoint)
        self.logger.info(
            "health_verification_started",
            url=url,
            max_attempts=max_attempts,
            interval_seconds=interval_seconds,
        )

        verdict: HealthVerdict | None = None
        for attempt in range(1, max_attempts + 1):
            verdict = self.probe(url)
            if verdict.healthy:
                self.logger.info(
                    "health_check_passed",
                    url=url,
                    attempt=attempt,
                    latency_seconds=round(verdict.latency_seconds, 3),
                )
                return VerificationResult(
                    status=HealthStatus.HEALTHY,
                    url=url,
                    attempts=attempt,
                    max_attempts=max_attempts,
                    last_verdict=verdict,
                )

            self.logger.info(
                "health_check_failed",
                url=url,
                attempt=attempt,
                max_attempts=max_attempts,
                status_code=verdict.status_code,
                error=verdict.error,
            )
            if attempt < max_attempts:
                self.sleep(interval_seconds)

        self.logger.error("health_verification_failed", url=url, attempts=max_attempts)
        return VerificationResult(
            status=HealthStatus.UNHEALTHY,
            url=url,
            attempts=max_attempts,
            max_attempts=max_attempts,
            last_verdict=verdict,
        )

    def fetch_version(self, base_url: str) -> dict[str, Any] | None:
        """Read the service's version endpoint for post-hoc verification.

        Returns the decoded JSON object, or None when the endpoint is missing,
        unreachable or not JSON.
        """
        url = build_url(base_url, VERSION_ENDPOINT)
        try:
            response = self._get_client().get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.warning("version_fetch_failed", url=url, error=str(e))
            return None

        if not isinstance(payload, dict):
            return {"version": payload}
        return payload

    def close(self) -> None:
        """Close the HTTP client if this verifier created it."""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None


class ExtendedMonitor:
    """Single-probe monitoring over a wall-clock window.

    Attributes:
        verifier: Source of single probes
        logger: Structured logger instance
    """

    def __init__(
        self,
        verifier: HealthVerifier,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize ExtendedMonitor.

        Args:
            verifier: HealthVerifier whose probe() is used for each check
            sleep: Blocking wait between checks (defaults to the verifier's)
        """
        self.verifier = verifier
        self.logger = get_logger(__name__)
        self.sleep = sleep or verifier.sleep

    def monitor(
        self,
        base_url: str,
        duration_minutes: float,
        interval_seconds: float,
        max_consecutive_failures: int,
        endpoint: str = DEFAULT_ENDPOINT,
    ) -> MonitorResult:
        """Probe once per interval for the window, failing fast on a failure run.

        Args:
            base_url: Service base URL
            duration_minutes: Length of the window
            interval_seconds: Wait between checks
            max_consecutive_failures: Failure run that makes the service unstable
            endpoint: Liveness endpoint path

        Returns:
            MonitorResult, UNSTABLE as soon as the failure run reaches the maximum
        """
        if max_consecutive_failures < 1:
            raise ValueError(
                f"max_consecutive_failures must be >= 1, got {max_consecutive_failures}"
            )

        url = build_url(base_url, endpoint)
        total_checks = planned_checks(duration_minutes, interval_seconds)
        self.logger.info(
            "extended_monitoring_started",
            url=url,
            duration_minutes=duration_minutes,
            interval_seconds=interval_seconds,
            total_checks=total_checks,
            max_consecutive_failures=max_consecutive_failures,
        )

        consecutive_failures = 0
        total_failures = 0
        for check in range(1, total_checks + 1):
            verdict = self.verifier.probe(url)
            if verdict.healthy:
                consecutive_failures = 0
                self.logger.debug("monitor_check_passed", url=url, check=check)
            else:
                consecutive_failures += 1
                total_failures += 1
                self.logger.warning(
                    "monitor_check_failed",
                    url=url,
                    check=check,
                    total_checks=total_checks,
                    consecutive_failures=consecutive_failures,
                    error=verdict.error,
                )
                if consecutive_failures >= max_consecutive_failures:
                    self.logger.error(
                        "extended_monitoring_unstable",
                        url=url,
                        checks_performed=check,
                        total_failures=total_failures,
                    )
                    return MonitorResult(
                        status=MonitorStatus.UNSTABLE,
                        url=url,
                        planned_checks=total_checks,
                        checks_performed=check,
                        total_failures=total_failures,
                        consecutive_failures=consecutive_failures,
                    )

            if check < total_checks:
                self.sleep(interval_seconds)

        self.logger.info(
            "extended_monitoring_stable",
            url=url,
            checks_performed=total_checks,
            total_failures=total_failures,
        )
        return MonitorResult(
            status=MonitorStatus.STABLE,
            url=url,
            planned_checks=total_checks,
            checks_performed=total_checks,
            total_failures=total_failures,
            consecutive_failures=consecutive_failures,
        )
