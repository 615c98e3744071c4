"""
Connectivity Monitor

Answers one question: can we reach the internet right now?

DESIGN DECISION: A single endpoint is a poor signal (it may be blocked,
rate limited or down). We probe several unrelated endpoints in parallel and
call the device online as soon as ANY of them answers. Each probe has its own
timeout; a slow probe is abandoned and counted as failed without holding up
the others. A check never retries; callers simply check again later.

Before probing at all, the local network interface is consulted. If it says
we are offline there is no point touching the network.
"""

import asyncio
import socket
import time
from collections.abc import Awaitable, Callable
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from envelope_ledger.config import SyncSettings, get_settings


logger = structlog.get_logger(__name__)

InterfaceCheck = Callable[[], bool]
Probe = Callable[[str], Awaitable[bool]]
ConnectivityCallback = Callable[[bool], None]


class ProbeResult(BaseModel):
    """Outcome of one reachability probe."""

    url: str
    ok: bool
    status_code: Optional[int] = None
    elapsed_ms: float = Field(default=0.0, ge=0)
    error: Optional[str] = None


def network_interface_up() -> bool:
    """
    Whether the OS has a route out.

    Connecting a UDP socket sends no packet; it only asks the kernel to pick
    a route, which fails immediately when no interface is up.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
        return True
    except OSError:
        return False


class ConnectivityMonitor:
    """
    Parallel multi-endpoint reachability check.

    Usage:
        monitor = ConnectivityMonitor()
        monitor.on_connectivity_change(lambda online: print("online" if online else "offline"))
        if await monitor.check():
            ...
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        interface_check: Optional[InterfaceCheck] = None,
        probe: Optional[Probe] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings().sync
        self._interface_check = interface_check or network_interface_up
        self._probe = probe
        self._client = client
        self._callbacks: list[ConnectivityCallback] = []
        self._is_online: Optional[bool] = None
        self._last_results: list[ProbeResult] = []
        self._last_checked: Optional[float] = None

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_connectivity_change(self, callback: ConnectivityCallback) -> None:
        """Register a callback fired on online/offline transitions."""
        self._callbacks.append(callback)

    def _set_online(self, online: bool) -> None:
        previous = self._is_online
        self._is_online = online
        if previous is None or previous == online:
            return
        logger.info("connectivity_changed", is_online=online)
        for callback in list(self._callbacks):
            try:
                callback(online)
            except Exception as e:
                logger.error("connectivity_callback_failed", error=str(e))

    # ------------------------------------------------------------------
    # Public queries
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        """Result of the last check; False before the first one."""
        return bool(self._is_online)

    @property
    def last_results(self) -> list[ProbeResult]:
        return list(self._last_results)

    @property
    def last_checked(self) -> Optional[float]:
        return self._last_checked

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    async def check(self) -> bool:
        """
        Run one connectivity check.

        Returns:
            True if at least one probe succeeded
        """
        self._last_checked = time.time()

        if not self._interface_check():
            logger.info("connectivity_interface_down")
            self._last_results = []
            self._set_online(False)
            return False

        results = await self.probe_all()
        self._last_results = results
        online = any(result.ok for result in results)

        logger.debug(
            "connectivity_checked",
            is_online=online,
            succeeded=sum(1 for r in results if r.ok),
            probes=len(results),
        )
        self._set_online(online)
        return online

    async def probe_all(self) -> list[ProbeResult]:
        """Run every probe concurrently, each under its own timeout."""
        urls = self._settings.probe_urls
        if self._client is not None or self._probe is not None:
            return list(await asyncio.gather(*(self._timed_probe(url, self._client) for url in urls)))

        async with httpx.AsyncClient(follow_redirects=True) as client:
            return list(await asyncio.gather(*(self._timed_probe(url, client) for url in urls)))

    async def _timed_probe(self, url: str, client: Optional[httpx.AsyncClient]) -> ProbeResult:
        timeout = self._settings.probe_timeout_seconds
        started = time.perf_counter()

        def elapsed() -> float:
            return (time.perf_counter() - started) * 1000

        try:
            if self._probe is not None:
                ok = await asyncio.wait_for(self._probe(url), timeout)
                return ProbeResult(url=url, ok=bool(ok), elapsed_ms=elapsed())

            response = await asyncio.wait_for(self._request(client, url, timeout), timeout)
            return ProbeResult(
                url=url,
                ok=response.status_code < 400,
                status_code=response.status_code,
                elapsed_ms=elapsed(),
            )
        except asyncio.TimeoutError:
            return ProbeResult(url=url, ok=False, elapsed_ms=elapsed(), error="timeout")
        except (httpx.HTTPError, OSError) as e:
            return ProbeResult(url=url, ok=False, elapsed_ms=elapsed(), error=str(e) or type(e).__name__)

    @staticmethod
    async def _request(client: httpx.AsyncClient, url: str, timeout: float) -> httpx.Response:
        # Status endpoints need a GET; static assets answer a cheap HEAD
        if "/status/" in url:
            return await client.get(url, timeout=timeout)
        return await client.head(url, timeout=timeout)
