"""
Probe loop for xping.

Sends one HTTP HEAD request per iteration through the local xray inbound,
measures the round trip and accumulates PingStatistics.
"""

import asyncio
import errno
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import aiohttp
import structlog
from aiohttp_socks import ProxyConnectionError, ProxyConnector, ProxyError, ProxyTimeoutError

from .models import PingStatistics
from .utils import sleep_unless_cancelled

logger = structlog.get_logger(__name__)


class FailureReason(str, Enum):
    """Why a single probe failed."""
    TIMEOUT = "timeout"
    CONNECTION_FAILED = "connection-failed"
    CONNECTION_REFUSED = "connection-refused"
    HOST_NOT_FOUND = "host-not-found"
    NETWORK_ERROR = "network-error"

    @property
    def text(self) -> str:
        return {
            FailureReason.TIMEOUT: "Request timeout",
            FailureReason.CONNECTION_FAILED: "Connection failed",
            FailureReason.CONNECTION_REFUSED: "Connection refused",
            FailureReason.HOST_NOT_FOUND: "Host not found",
            FailureReason.NETWORK_ERROR: "Network error",
        }[self]


# Checked in order; the first group with a matching substring wins.
_REASON_MARKERS: list[tuple[FailureReason, tuple[str, ...]]] = [
    (FailureReason.TIMEOUT, ("timeout", "timed out")),
    (FailureReason.CONNECTION_REFUSED, ("refused",)),
    (FailureReason.HOST_NOT_FOUND, (
        "not known", "nodename", "getaddrinfo", "name resolution",
        "no address associated", "host not found",
    )),
    (FailureReason.CONNECTION_FAILED, (
        "connect", "proxy", "disconnected", "reset", "closed", "broken pipe",
    )),
]


def classify_probe_error(error: BaseException) -> FailureReason:
    """Pick a failure reason by matching substrings of the error's type and message."""
    if getattr(error, "errno", None) == errno.ECONNREFUSED:
        return FailureReason.CONNECTION_REFUSED
    text = f"{type(error).__name__}: {error}".lower()
    # Proxy errors carry the errno only in their message
    if f"[errno {errno.ECONNREFUSED}]" in text and "timeout" not in text:
        return FailureReason.CONNECTION_REFUSED
    for reason, markers in _REASON_MARKERS:
        if any(marker in text for marker in markers):
            return reason
    return FailureReason.NETWORK_ERROR


@dataclass
class ProbeResult:
    """Outcome of one probe."""
    ok: bool
    latency_ms: int = 0
    status: Optional[int] = None
    reason: Optional[FailureReason] = None
    error: str = ""

    @classmethod
    def success(cls, latency_ms: int, status: Optional[int] = None) -> "ProbeResult":
        return cls(ok=True, latency_ms=latency_ms, status=status)

    @classmethod
    def failure(cls, reason: FailureReason, error: str = "") -> "ProbeResult":
        return cls(ok=False, reason=reason, error=error)


class HttpProber:
    """Issues HEAD requests to a target URL through a local proxy."""

    def __init__(self, proxy_url: str, target_url: str, timeout: float = 10.0):
        """
        Args:
            proxy_url: Local proxy, e.g. http://127.0.0.1:10801
            target_url: URL to request
            timeout: Per-request timeout in seconds
        """
        self.proxy_url = proxy_url
        self.target_url = target_url
        self.timeout = timeout

    async def probe(self) -> ProbeResult:
        """Send one HEAD request; transport errors become failure results."""
        start = time.monotonic()
        try:
            connector = ProxyConnector.from_url(self.proxy_url)
            async with aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as session:
                async with session.head(self.target_url, allow_redirects=False) as response:
                    status = response.status
        except (
            aiohttp.ClientError,
            asyncio.TimeoutError,
            ProxyError,
            ProxyConnectionError,
            ProxyTimeoutError,
            OSError,
        ) as e:
            reason = classify_probe_error(e)
            logger.debug("Probe failed", reason=reason.value, error=repr(e))
            return ProbeResult.failure(reason, str(e) or type(e).__name__)

        latency_ms = round((time.monotonic() - start) * 1000)
        logger.debug("Probe succeeded", status=status, latency_ms=latency_ms)
        return ProbeResult.success(latency_ms, status)


class PingReporter:
    """Receives probe loop events. The default implementation ignores them."""

    def probe_started(self, sequence: int) -> None:
        pass

    def probe_finished(self, sequence: int, result: ProbeResult) -> None:
        pass


class PingLoop:
    """
    Runs probes until the count is reached or the cancel event is set.

    An interrupt during a probe abandons that probe; statistics only count
    probes that completed.
    """

    def __init__(
        self,
        prober,
        delay: float = 1.0,
        count: Optional[int] = None,
        reporter: Optional[PingReporter] = None,
        check_alive: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            prober: Object with an async ``probe() -> ProbeResult``
            delay: Seconds between probes
            count: Number of probes, None for unbounded
            reporter: Receives per-probe events
            check_alive: Called before every probe; raises if the proxy died
        """
        self.prober = prober
        self.delay = delay
        self.count = count
        self.reporter = reporter or PingReporter()
        self.check_alive = check_alive

    async def run(
        self,
        stats: Optional[PingStatistics] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> PingStatistics:
        """Run the loop and return the (mutated) statistics."""
        stats = stats if stats is not None else PingStatistics()
        cancel = cancel or asyncio.Event()
        sequence = 0

        while self.count is None or sequence < self.count:
            if cancel.is_set():
                break
            if self.check_alive:
                self.check_alive()

            sequence += 1
            self.reporter.probe_started(sequence)
            result = await self._probe_unless_cancelled(cancel)
            if result is None:
                logger.debug("Probe abandoned on interrupt", sequence=sequence)
                break

            if result.ok:
                stats.record_success(result.latency_ms)
            else:
                stats.record_failure()
            self.reporter.probe_finished(sequence, result)

            if self.count is not None and sequence >= self.count:
                break
            if await sleep_unless_cancelled(self.delay, cancel):
                break

        return stats

    async def _probe_unless_cancelled(self, cancel: asyncio.Event) -> Optional[ProbeResult]:
        probe_task = asyncio.create_task(self.prober.probe())
        cancel_task = asyncio.create_task(cancel.wait())
        done, _ = await asyncio.wait(
            {probe_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if probe_task in done:
            cancel_task.cancel()
            await asyncio.gather(cancel_task, return_exceptions=True)
            return probe_task.result()

        probe_task.cancel()
        await asyncio.gather(probe_task, return_exceptions=True)
        return None
