"""Unit tests for readiness probes (microforge.orchestrator.probes).

Covers:
- parse_tcp_address
- create_probe for each protocol
- ProbeSettings.resolve (per-node overrides, defaults)
- wait_until_ready backoff with an injected clock and sleep
- TcpProbe and HttpProbe against real local sockets
- ExitCodeProbe with a check command and with the node's own exit code
"""

from __future__ import annotations

import asyncio
import sys

import pytest

from microforge.config import SupervisorConfig
from microforge.errors import NodeStartError, ReadinessTimeoutError, ValidationError
from microforge.manifest.models import ProbeDescriptor, ProbeProtocol
from microforge.orchestrator.probes import (
    ExitCodeProbe,
    HttpProbe,
    ProbeSettings,
    TcpProbe,
    create_probe,
    parse_tcp_address,
    wait_until_ready,
)

pytestmark = pytest.mark.unit


class ScriptedProbe:
    """Fails ``failures`` times, then succeeds (or never, with ``None``)."""

    def __init__(self, failures):
        self.failures = failures
        self.checks = 0

    async def check(self) -> bool:
        self.checks += 1
        return self.failures is not None and self.checks > self.failures

    def describe(self) -> str:
        return "scripted"


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def _serve(handler):
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port


async def _unused_port() -> int:
    server, port = await _serve(lambda r, w: w.close())
    server.close()
    await server.wait_closed()
    return port


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestParseTcpAddress:
    @pytest.mark.parametrize(
        "address, expected",
        [
            ("localhost:5432", ("localhost", 5432)),
            ("10.0.0.5:6379", ("10.0.0.5", 6379)),
            ("[::1]:8080", ("::1", 8080)),
        ],
    )
    def test_valid(self, address, expected):
        assert parse_tcp_address(address) == expected

    @pytest.mark.parametrize("address", ["localhost", "host:abc", ":80", "host:0", "host:70000"])
    def test_invalid(self, address):
        with pytest.raises(ValidationError) as exc_info:
            parse_tcp_address(address)
        assert exc_info.value.rule == "probe-address"


class TestCreateProbe:
    def test_no_descriptor(self):
        assert create_probe("db", None) is None

    def test_tcp(self):
        probe = create_probe("db", ProbeDescriptor(protocol=ProbeProtocol.TCP, address="localhost:5432"))
        assert isinstance(probe, TcpProbe)
        assert probe.describe() == "tcp localhost:5432"

    def test_http_with_expect(self):
        probe = create_probe(
            "people",
            ProbeDescriptor(protocol=ProbeProtocol.HTTP, address="http://localhost:5100/health", expect=204),
        )
        assert isinstance(probe, HttpProbe)
        assert probe.expect == 204

    def test_exit_code(self):
        probe = create_probe(
            "migrate",
            ProbeDescriptor(protocol=ProbeProtocol.EXIT_CODE, command=["true"]),
        )
        assert isinstance(probe, ExitCodeProbe)
        assert probe.expect == 0
        assert probe.command == ["true"]

    def test_missing_address(self):
        with pytest.raises(ValidationError):
            create_probe("db", ProbeDescriptor(protocol=ProbeProtocol.TCP))
        with pytest.raises(ValidationError):
            create_probe("api", ProbeDescriptor(protocol=ProbeProtocol.HTTP))


class TestProbeSettings:
    def test_defaults_without_descriptor(self):
        settings = ProbeSettings.resolve(None, SupervisorConfig())
        assert settings == ProbeSettings(timeout=60.0, interval=0.5, max_interval=5.0, max_attempts=None)

    def test_descriptor_overrides(self):
        descriptor = ProbeDescriptor(
            protocol=ProbeProtocol.TCP, address="localhost:1", timeout=5, interval=0.1, max_attempts=4
        )
        settings = ProbeSettings.resolve(descriptor, SupervisorConfig())
        assert settings.timeout == 5
        assert settings.interval == 0.1
        assert settings.max_interval == 5.0
        assert settings.max_attempts == 4

    def test_max_interval_never_below_interval(self):
        descriptor = ProbeDescriptor(protocol=ProbeProtocol.TCP, address="localhost:1", interval=10)
        assert ProbeSettings.resolve(descriptor, SupervisorConfig()).max_interval == 10


# ---------------------------------------------------------------------------
# wait_until_ready
# ---------------------------------------------------------------------------


class TestWaitUntilReady:
    @pytest.mark.asyncio
    async def test_exponential_backoff(self):
        clock = FakeClock()
        settings = ProbeSettings(timeout=60, interval=0.5, max_interval=2.0)

        attempts = await wait_until_ready(
            "db", ScriptedProbe(failures=4), settings, sleep=clock.sleep, clock=clock
        )

        assert attempts == 5
        assert clock.sleeps == [0.5, 1.0, 2.0, 2.0]

    @pytest.mark.asyncio
    async def test_first_check_succeeds_without_sleeping(self):
        clock = FakeClock()
        settings = ProbeSettings(timeout=1, interval=0.5, max_interval=1)
        assert await wait_until_ready("db", ScriptedProbe(0), settings, sleep=clock.sleep, clock=clock) == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_timeout(self):
        clock = FakeClock()
        settings = ProbeSettings(timeout=3, interval=1, max_interval=10)

        probe = ScriptedProbe(None)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await wait_until_ready("db", probe, settings, sleep=clock.sleep, clock=clock)

        assert exc_info.value.node == "db"
        assert exc_info.value.attempts == 2
        assert probe.checks == 2
        assert clock.sleeps == [1, 2]
        assert "within 3s" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_max_attempts(self):
        clock = FakeClock()
        settings = ProbeSettings(timeout=60, interval=1, max_interval=1, max_attempts=2)
        probe = ScriptedProbe(None)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await wait_until_ready("db", probe, settings, sleep=clock.sleep, clock=clock)

        assert probe.checks == 2
        assert exc_info.value.attempts == 2
        assert exc_info.value.max_attempts == 2
        assert "limit of 2 attempt(s)" in str(exc_info.value)
        assert "60s" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_hung_check_is_cut_off_at_deadline(self):
        class HangingProbe:
            async def check(self) -> bool:
                await asyncio.sleep(3)
                return True

            def describe(self) -> str:
                return "hanging"

        settings = ProbeSettings(timeout=0.3, interval=0.05, max_interval=0.1)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(ReadinessTimeoutError):
            await wait_until_ready("db", HangingProbe(), settings)

        assert loop.time() - started < 1.5

    @pytest.mark.asyncio
    async def test_early_exit_is_a_start_failure(self):
        clock = FakeClock()
        settings = ProbeSettings(timeout=60, interval=1, max_interval=1)

        with pytest.raises(NodeStartError, match="exited with code 3") as exc_info:
            await wait_until_ready(
                "people", ScriptedProbe(None), settings,
                exited=lambda: 3, sleep=clock.sleep, clock=clock,
            )
        assert not isinstance(exc_info.value, ReadinessTimeoutError)

    @pytest.mark.asyncio
    async def test_real_sleep(self):
        settings = ProbeSettings(timeout=1, interval=0.01, max_interval=0.02)
        assert await wait_until_ready("db", ScriptedProbe(2), settings) == 3


# ---------------------------------------------------------------------------
# Probe implementations
# ---------------------------------------------------------------------------


class TestTcpProbe:
    @pytest.mark.asyncio
    async def test_listening_port(self):
        async def handler(reader, writer):
            writer.close()

        server, port = await _serve(handler)
        try:
            assert await TcpProbe("127.0.0.1", port).check() is True
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_closed_port(self):
        port = await _unused_port()
        assert await TcpProbe("127.0.0.1", port, connect_timeout=1).check() is False


class TestHttpProbe:
    @staticmethod
    def _handler(status_line: str):
        async def handler(reader, writer):
            await reader.readuntil(b"\r\n\r\n")
            writer.write(
                f"HTTP/1.1 {status_line}\r\nContent-Length: 0\r\nConnection: close\r\n\r\n".encode()
            )
            await writer.drain()
            writer.close()

        return handler

    @pytest.mark.asyncio
    async def test_expected_status(self):
        server, port = await _serve(self._handler("200 OK"))
        try:
            assert await HttpProbe(f"http://127.0.0.1:{port}/health").check() is True
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_unexpected_status(self):
        server, port = await _serve(self._handler("503 Service Unavailable"))
        try:
            assert await HttpProbe(f"http://127.0.0.1:{port}/health").check() is False
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        port = await _unused_port()
        assert await HttpProbe(f"http://127.0.0.1:{port}/health").check() is False


class TestExitCodeProbe:
    @pytest.mark.asyncio
    async def test_command_success(self):
        probe = ExitCodeProbe("migrate", command=[sys.executable, "-c", "raise SystemExit(0)"])
        assert await probe.check() is True

    @pytest.mark.asyncio
    async def test_command_other_code(self):
        probe = ExitCodeProbe("migrate", expect=0, command=[sys.executable, "-c", "raise SystemExit(4)"])
        assert await probe.check() is False

    @pytest.mark.asyncio
    async def test_missing_command(self):
        assert await ExitCodeProbe("migrate", command=["no-such-binary-xyz"]).check() is False

    @pytest.mark.asyncio
    async def test_own_process_still_running(self):
        assert await ExitCodeProbe("seed", returncode=lambda: None).check() is False

    @pytest.mark.asyncio
    async def test_own_process_exited_cleanly(self):
        assert await ExitCodeProbe("seed", returncode=lambda: 0).check() is True

    @pytest.mark.asyncio
    async def test_own_process_failed(self):
        with pytest.raises(NodeStartError, match="exited with code 2"):
            await ExitCodeProbe("seed", returncode=lambda: 2).check()
