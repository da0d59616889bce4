"""
Run orchestration for xping.

A RunContext owns everything one run needs: the options, the xray
supervisor, the statistics and the cancel event set by SIGINT/SIGTERM.
Normal completion and interrupts share the same teardown path.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog
from rich.console import Console

from . import ui, xray
from .core.config import Settings
from .derivation import derive, detect_fragment
from .errors import (
    BinaryNotFound,
    ConfigValidationFailed,
    NoLocalInbound,
    XpingError,
)
from .models import DerivedInput, FragmentInfo, PingStatistics, Provenance
from .prober import HttpProber, PingLoop
from .supervisor import XraySupervisor
from .synthesizer import (
    LOOPBACK,
    build_config,
    find_free_port,
    local_inbounds,
    probe_proxy_url,
    rebind_config,
)

logger = structlog.get_logger(__name__)


@dataclass
class RunOptions:
    """Options supplied by the command line."""
    input: str
    fragment: bool = False
    delay_ms: int = 1000
    timeout_ms: int = 10000
    count: Optional[int] = None


@dataclass
class PreparedConfig:
    """A validated xray config and how to reach its local inbound."""
    document: dict
    proxy_url: str
    fragment: FragmentInfo


async def _distinct_free_ports(first: int, total: int) -> list[int]:
    ports = [first]
    while len(ports) < total:
        port = await find_free_port()
        if port not in ports:
            ports.append(port)
    return ports


async def prepare_config(
    derived: DerivedInput,
    proxy_port: int,
    fragment_enabled: bool,
    settings: Settings,
) -> PreparedConfig:
    """
    Build the xray config for a derived input.

    URLs get a fresh config; config files get a rebound copy.

    Raises:
        NoLocalInbound: a config file has no http/mixed/socks inbound
    """
    if derived.provenance == Provenance.DIRECT_URL:
        document = build_config(
            derived.descriptor,
            proxy_port,
            fragment_enabled=fragment_enabled,
            fragment=settings.fragment,
        )
        if fragment_enabled:
            fragment = FragmentInfo(enabled=True, **settings.fragment)
        else:
            fragment = FragmentInfo(enabled=False)
        return PreparedConfig(
            document=document,
            proxy_url=f"http://{LOOPBACK}:{proxy_port}",
            fragment=fragment,
        )

    original = derived.document or {}
    inbounds = local_inbounds(original)
    if not inbounds:
        raise NoLocalInbound(
            "No local proxy inbound found in config file",
            ["Expected an inbound with protocol http, mixed or socks"],
        )

    ports = await _distinct_free_ports(proxy_port, len(inbounds))
    document = rebind_config(original, ports)
    return PreparedConfig(
        document=document,
        proxy_url=probe_proxy_url(document),
        fragment=detect_fragment(original),
    )


class RunContext:
    """State and control flow of a single xping run."""

    def __init__(
        self,
        options: RunOptions,
        settings: Settings,
        out: Optional[Console] = None,
    ):
        self.options = options
        self.settings = settings
        self.out = out or ui.console
        self.cancel = asyncio.Event()
        self.stats = PingStatistics()
        self.supervisor: Optional[XraySupervisor] = None
        self.reporter: Optional[ui.ConsoleReporter] = None

    def interrupt(self) -> None:
        """Request the run to stop; safe to call from a signal handler."""
        self.cancel.set()

    @property
    def interrupted(self) -> bool:
        return self.cancel.is_set()

    async def run(self) -> int:
        """
        Execute the run.

        Returns:
            Process exit code: 0 on completion or interrupt, 1 on a fatal error
        """
        try:
            try:
                await self._execute()
            except XpingError as e:
                logger.error("Run failed", error=type(e).__name__, message=e.message)
                ui.show_fatal(e, out=self.out)
                return 1

            if self.interrupted:
                if self.reporter:
                    self.reporter.interrupted()
                else:
                    self.out.print(f"\n[{ui.Colors.WARNING}]^C[/{ui.Colors.WARNING}]", highlight=False)

            ui.show_statistics(self.stats, out=self.out)
            return 0
        finally:
            await self.teardown()

    async def _execute(self) -> None:
        options = self.options
        settings = self.settings

        binary = await xray.locate(settings.xray_path)
        if binary is None:
            raise BinaryNotFound(settings.xray_path)

        proxy_port = await find_free_port()
        derived = derive(options.input)

        if options.fragment and derived.provenance == Provenance.EXISTING_CONFIG:
            ui.warning("Fragment mode is only applied to vless URLs, not config files", out=self.out)

        prepared = await prepare_config(derived, proxy_port, options.fragment, settings)

        validation = await xray.validate(binary.path, prepared.document, timeout=settings.validation_timeout)
        if self.interrupted:
            return
        if derived.provenance == Provenance.DIRECT_URL:
            subject = "Generated config validation"
        else:
            subject = "Config validation"
        if not validation.valid:
            raise ConfigValidationFailed(f"{subject} failed:", [validation.message])
        ui.success(f"{subject} passed", out=self.out)

        ui.show_connection(derived.descriptor, derived.provenance, prepared.fragment, out=self.out)

        if self.interrupted:
            return

        self.supervisor = XraySupervisor(
            binary.path,
            ready_markers=settings.ready_markers,
            fatal_markers=settings.fatal_markers,
            poll_interval=settings.startup_poll_interval,
            attempts=settings.startup_attempts,
            stop_timeout=settings.stop_timeout,
        )
        self.supervisor.set_error_callback(lambda line: ui.show_xray_error(line, out=self.out))
        logger.info("Starting xray", deadline=settings.startup_deadline)
        await self.supervisor.start(prepared.document)

        if not await self.supervisor.wait_until_ready(self.cancel):
            return

        logger.info("Probing", proxy=prepared.proxy_url, target=settings.target_url)
        self.reporter = ui.ConsoleReporter(derived.descriptor, settings.target_url, out=self.out)
        loop = PingLoop(
            HttpProber(prepared.proxy_url, settings.target_url, timeout=options.timeout_ms / 1000),
            delay=options.delay_ms / 1000,
            count=options.count,
            reporter=self.reporter,
            check_alive=self.supervisor.check_alive,
        )
        await loop.run(self.stats, self.cancel)

    async def teardown(self) -> None:
        """Stop xray if it is running."""
        if self.supervisor is not None:
            await self.supervisor.stop()
