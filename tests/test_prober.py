"""Tests for the probe loop and the HTTP prober."""

import asyncio
import errno

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from aiohttp_socks import ProxyError

from xping.errors import ProcessExitedEarly
from xping.models import PingStatistics
from xping.prober import (
    FailureReason,
    HttpProber,
    PingLoop,
    PingReporter,
    ProbeResult,
    classify_probe_error,
)
from xping.synthesizer import find_free_port


class FakeProber:
    """Returns queued results; a callable entry is awaited instead."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def probe(self) -> ProbeResult:
        self.calls += 1
        result = self.results.pop(0)
        if callable(result):
            return await result()
        return result


class RecordingReporter(PingReporter):
    def __init__(self):
        self.started = []
        self.finished = []

    def probe_started(self, sequence):
        self.started.append(sequence)

    def probe_finished(self, sequence, result):
        self.finished.append((sequence, result))


class TestPingLoop:
    """Tests for PingLoop."""

    @pytest.mark.asyncio
    async def test_count(self):
        """Test a bounded run of three successful probes."""
        prober = FakeProber([ProbeResult.success(ms) for ms in (100, 150, 200)])
        reporter = RecordingReporter()
        stats = await PingLoop(prober, delay=0, count=3, reporter=reporter).run()

        assert prober.calls == 3
        assert stats.attempted == 3
        assert stats.succeeded == 3
        assert stats.min_ms == 100
        assert stats.max_ms == 200
        assert stats.average_ms == 150
        assert reporter.started == [1, 2, 3]
        assert [seq for seq, _ in reporter.finished] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_failures_counted(self):
        """Test that failed probes count as lost."""
        prober = FakeProber([
            ProbeResult.success(80),
            ProbeResult.failure(FailureReason.TIMEOUT),
        ])
        stats = await PingLoop(prober, delay=0, count=2).run()
        assert stats.attempted == 2
        assert stats.succeeded == 1
        assert stats.loss_percent == 50

    @pytest.mark.asyncio
    async def test_no_delay_after_last_probe(self):
        """Test that the loop ends right after the final probe."""
        prober = FakeProber([ProbeResult.success(1)])
        loop = PingLoop(prober, delay=30, count=1)
        stats = await asyncio.wait_for(loop.run(), timeout=5)
        assert stats.attempted == 1

    @pytest.mark.asyncio
    async def test_interrupt_abandons_probe_in_flight(self):
        """Test that an interrupt during a probe leaves it uncounted."""
        cancel = asyncio.Event()

        async def interrupted_probe():
            cancel.set()
            await asyncio.sleep(30)

        prober = FakeProber([
            ProbeResult.success(50),
            ProbeResult.failure(FailureReason.CONNECTION_FAILED),
            interrupted_probe,
        ])
        reporter = RecordingReporter()
        stats = PingStatistics()
        await asyncio.wait_for(
            PingLoop(prober, delay=0, reporter=reporter).run(stats, cancel),
            timeout=5,
        )

        assert prober.calls == 3
        assert stats.attempted == 2
        assert stats.succeeded == 1
        assert reporter.started == [1, 2, 3]
        assert len(reporter.finished) == 2

    @pytest.mark.asyncio
    async def test_interrupt_during_delay(self):
        """Test that an interrupt while sleeping ends the loop."""
        cancel = asyncio.Event()
        prober = FakeProber([ProbeResult.success(10)] * 5)
        asyncio.get_running_loop().call_later(0.1, cancel.set)

        stats = await asyncio.wait_for(PingLoop(prober, delay=30).run(cancel=cancel), timeout=5)
        assert stats.attempted == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        """Test that no probe is sent once interrupted."""
        cancel = asyncio.Event()
        cancel.set()
        prober = FakeProber([])
        stats = await PingLoop(prober, delay=0, count=3).run(cancel=cancel)
        assert prober.calls == 0
        assert stats.attempted == 0

    @pytest.mark.asyncio
    async def test_proxy_death_stops_loop(self):
        """Test that check_alive errors propagate out of the loop."""
        prober = FakeProber([ProbeResult.success(10)] * 5)
        checks = []

        def check_alive():
            checks.append(1)
            if len(checks) > 2:
                raise ProcessExitedEarly(1, ["panic"])

        stats = PingStatistics()
        with pytest.raises(ProcessExitedEarly):
            await PingLoop(prober, delay=0, check_alive=check_alive).run(stats)
        assert stats.attempted == 2


class TestClassifyProbeError:
    """Tests for mapping transport errors to failure reasons."""

    @pytest.mark.parametrize("error,reason", [
        (asyncio.TimeoutError(), FailureReason.TIMEOUT),
        (aiohttp.ServerTimeoutError("Timeout on reading data from socket"), FailureReason.TIMEOUT),
        (ConnectionRefusedError(111, "Connection refused"), FailureReason.CONNECTION_REFUSED),
        (OSError(-2, "Name or service not known"), FailureReason.HOST_NOT_FOUND),
        (ProxyError("Connection closed unexpectedly"), FailureReason.CONNECTION_FAILED),
        (ConnectionResetError(104, "Connection reset by peer"), FailureReason.CONNECTION_FAILED),
        (aiohttp.ClientPayloadError("Response payload is not completed"), FailureReason.NETWORK_ERROR),
    ])
    def test_reasons(self, error, reason):
        """Test the reason chosen for common errors."""
        assert classify_probe_error(error) == reason

    def test_refused_errno_in_message(self):
        """Test a proxy error that only reports the refusal in its message."""
        class WrappedProxyError(Exception):
            pass

        error = WrappedProxyError(f"[Errno {errno.ECONNREFUSED}] Couldn't connect to proxy 127.0.0.1:1080")
        assert classify_probe_error(error) == FailureReason.CONNECTION_REFUSED

    def test_refused_errno_attribute(self):
        """Test an error carrying ECONNREFUSED as its errno."""
        error = OSError(errno.ECONNREFUSED, "Connect call failed")
        assert classify_probe_error(error) == FailureReason.CONNECTION_REFUSED

    def test_reason_text(self):
        """Test the user-facing reason text."""
        assert FailureReason.TIMEOUT.text == "Request timeout"
        assert FailureReason.CONNECTION_REFUSED.text == "Connection refused"
        assert FailureReason.NETWORK_ERROR.text == "Network error"


async def _connect_relay(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Minimal HTTP CONNECT proxy standing in for the xray http inbound."""
    head = await reader.readuntil(b"\r\n\r\n")
    target = head.split(b" ")[1].decode()
    host, _, port = target.rpartition(":")
    upstream_reader, upstream_writer = await asyncio.open_connection(host, int(port))
    writer.write(b"HTTP/1.1 200 Connection established\r\n\r\n")
    await writer.drain()

    async def pipe(src, dst):
        try:
            while data := await src.read(65536):
                dst.write(data)
                await dst.drain()
        except ConnectionError:
            pass
        finally:
            dst.close()

    await asyncio.gather(pipe(reader, upstream_writer), pipe(upstream_reader, writer))


async def _silent(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    await reader.read()
    writer.close()


@pytest_asyncio.fixture
async def target():
    """Local HTTP server answering HEAD /generate_204 and /error."""
    async def no_content(request):
        return web.Response(status=204)

    async def server_error(request):
        return web.Response(status=500)

    app = web.Application()
    app.router.add_route("HEAD", "/generate_204", no_content)
    app.router.add_route("HEAD", "/error", server_error)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def relay():
    """HTTP CONNECT proxy on a local port; yields its proxy URL."""
    server = await asyncio.start_server(_connect_relay, host="127.0.0.1", port=0)
    port = server.sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}"
    server.close()


class TestHttpProber:
    """Tests for HttpProber."""

    @pytest.mark.asyncio
    async def test_success_through_proxy(self, target, relay):
        """Test a HEAD request relayed by the local proxy."""
        prober = HttpProber(relay, str(target.make_url("/generate_204")), timeout=5)
        result = await prober.probe()
        assert result.ok is True
        assert result.status == 204
        assert result.latency_ms >= 0

    @pytest.mark.asyncio
    async def test_any_status_is_success(self, target, relay):
        """Test that an HTTP error status still proves connectivity."""
        prober = HttpProber(relay, str(target.make_url("/error")), timeout=5)
        result = await prober.probe()
        assert result.ok is True
        assert result.status == 500

    @pytest.mark.asyncio
    async def test_proxy_not_listening(self):
        """Test a probe through a port nothing listens on."""
        port = await find_free_port()
        prober = HttpProber(f"http://127.0.0.1:{port}", "http://example.com/", timeout=5)
        result = await prober.probe()
        assert result.ok is False
        assert result.reason in (FailureReason.CONNECTION_REFUSED, FailureReason.CONNECTION_FAILED)
        assert result.error

    @pytest.mark.asyncio
    async def test_dead_proxy_counts_as_lost(self):
        """Test that a refused local proxy is a lost ping, not a crash."""
        port = await find_free_port()
        prober = HttpProber(f"http://127.0.0.1:{port}", "http://example.com/", timeout=2)
        stats = await asyncio.wait_for(PingLoop(prober, delay=0, count=2).run(), timeout=10)
        assert stats.attempted == 2
        assert stats.succeeded == 0
        assert stats.loss_percent == 100

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a proxy that accepts but never answers."""
        server = await asyncio.start_server(_silent, host="127.0.0.1", port=0)
        port = server.sockets[0].getsockname()[1]
        try:
            prober = HttpProber(f"http://127.0.0.1:{port}", "http://example.com/", timeout=0.3)
            result = await prober.probe()
        finally:
            server.close()
        assert result.ok is False
        assert result.reason == FailureReason.TIMEOUT
