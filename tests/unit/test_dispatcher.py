import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from powa_sentinel.config import ChannelConfig, NotifierConfig
from powa_sentinel.dispatch import Dispatcher
from powa_sentinel.domain import Alert, Finding, ScenarioKind, Severity
from powa_sentinel.exceptions import TransportPermanent, TransportTransient
from powa_sentinel.transport import Message, NotificationTransport, WeComTransport


class RecordingTransport:
    def __init__(self, name: str = "recording", failures: list[Exception] | None = None, delay: float = 0.0) -> None:
        self._name = name
        self._failures = list(failures or [])
        self._delay = delay
        self.sent: list[tuple[str, Message]] = []
        self.attempts = 0

    @property
    def name(self) -> str:
        return self._name

    async def send(self, channel: str, message: Message) -> None:
        self.attempts += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._failures:
            raise self._failures.pop(0)
        self.sent.append((channel, message))


def make_alert(subject: str = "db:1", severity: Severity = Severity.L1) -> Alert:
    finding = Finding("prod", ScenarioKind.SLOW_QUERY_TOP_N, subject, f"slow {subject}")
    return Alert(finding=finding, severity=severity, fingerprint=f"{subject}-fp", emitted_at=datetime(2026, 3, 1))


def test_recording_transport_implements_protocol():
    assert isinstance(RecordingTransport(), NotificationTransport)


class TestDeliver:
    @pytest.mark.asyncio
    async def test_delivers_to_every_unrouted_channel(self) -> None:
        a, b = RecordingTransport("a"), RecordingTransport("b")
        dispatcher = Dispatcher({"a": a, "b": b})
        assert await dispatcher.deliver(make_alert())
        assert len(a.sent) == 1 and len(b.sent) == 1
        assert dispatcher.stats.delivered == 2

    @pytest.mark.asyncio
    async def test_routes_by_severity(self) -> None:
        ops, dba = RecordingTransport("ops"), RecordingTransport("dba")
        dispatcher = Dispatcher({"ops": ops, "dba": dba}, routing={Severity.L3: ["dba"], Severity.L1: ["ops"]})
        await dispatcher.deliver(make_alert(severity=Severity.L3))
        await dispatcher.deliver(make_alert(severity=Severity.L1))
        assert [m.severity for _, m in dba.sent] == [Severity.L3]
        assert [m.severity for _, m in ops.sent] == [Severity.L1]

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self) -> None:
        transport = RecordingTransport(failures=[TransportTransient("busy"), TransportTransient("busy")])
        dispatcher = Dispatcher({"ch": transport}, retries=3, retry_delay=0.01)
        with patch("powa_sentinel.dispatch.dispatcher.random.uniform", return_value=0.0):
            assert await dispatcher.deliver(make_alert())
        assert transport.attempts == 3
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, caplog) -> None:
        transport = RecordingTransport(failures=[TransportTransient("busy")] * 5)
        dispatcher = Dispatcher({"ch": transport}, retries=2, retry_delay=0.01)
        with patch("powa_sentinel.dispatch.dispatcher.random.uniform", return_value=0.0):
            assert not await dispatcher.deliver(make_alert())
        assert transport.attempts == 3
        assert dispatcher.stats.failed == 1
        assert "after 2 retries" in caplog.text

    @pytest.mark.asyncio
    async def test_backoff_is_exponential(self) -> None:
        transport = RecordingTransport(failures=[TransportTransient("busy")] * 3)
        dispatcher = Dispatcher({"ch": transport}, retries=3, retry_delay=1.0)
        with (
            patch("powa_sentinel.dispatch.dispatcher.random.uniform", return_value=0.0),
            patch("powa_sentinel.dispatch.dispatcher.asyncio.sleep") as sleep,
        ):
            await dispatcher.deliver(make_alert())
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self) -> None:
        transport = RecordingTransport(failures=[TransportTransient("slow down", retry_after=7.0)])
        dispatcher = Dispatcher({"ch": transport}, retry_delay=1.0)
        with patch("powa_sentinel.dispatch.dispatcher.asyncio.sleep") as sleep:
            await dispatcher.deliver(make_alert())
        sleep.assert_called_once_with(7.0)

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self) -> None:
        transport = RecordingTransport(failures=[TransportPermanent("bad token")])
        dispatcher = Dispatcher({"ch": transport}, retries=3)
        assert not await dispatcher.deliver(make_alert())
        assert transport.attempts == 1

    @pytest.mark.asyncio
    async def test_send_timeout_counts_as_transient(self) -> None:
        transport = RecordingTransport(delay=1.0)
        dispatcher = Dispatcher({"ch": transport}, retries=0, timeout=0.01)
        assert not await dispatcher.deliver(make_alert())
        assert dispatcher.stats.failed == 1

    @pytest.mark.asyncio
    async def test_one_failing_channel_does_not_block_others(self) -> None:
        broken = RecordingTransport("broken", failures=[TransportPermanent("gone")])
        healthy = RecordingTransport("healthy")
        dispatcher = Dispatcher({"broken": broken, "healthy": healthy})
        assert not await dispatcher.deliver(make_alert())
        assert len(healthy.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_routed_channel(self) -> None:
        dispatcher = Dispatcher({"a": RecordingTransport("a")}, routing={Severity.L1: ["missing"]})
        assert not await dispatcher.deliver(make_alert())


class TestQueue:
    def test_drop_oldest_when_full(self) -> None:
        dispatcher = Dispatcher({"ch": RecordingTransport()}, queue_size=2, overflow="drop_oldest")
        assert all(dispatcher.dispatch(make_alert(f"db:{i}")) for i in range(3))
        assert dispatcher.pending == 2
        assert dispatcher.stats.dropped == 1

    def test_reject_when_full(self) -> None:
        dispatcher = Dispatcher({"ch": RecordingTransport()}, queue_size=2, overflow="reject")
        results = [dispatcher.dispatch(make_alert(f"db:{i}")) for i in range(3)]
        assert results == [True, True, False]
        assert dispatcher.stats.rejected == 1

    @pytest.mark.asyncio
    async def test_workers_drain_queue_on_close(self) -> None:
        transport = RecordingTransport()
        dispatcher = Dispatcher({"ch": transport}, workers=2)
        dispatcher.start()
        for i in range(5):
            dispatcher.dispatch(make_alert(f"db:{i}"))
        await dispatcher.close(timeout=1.0)
        assert sorted(m.alert.finding.subject for _, m in transport.sent) == [f"db:{i}" for i in range(5)]
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_drop_oldest_keeps_newest(self) -> None:
        transport = RecordingTransport()
        dispatcher = Dispatcher({"ch": transport}, queue_size=2)
        for i in range(4):
            dispatcher.dispatch(make_alert(f"db:{i}"))
        dispatcher.start()
        await dispatcher.close(timeout=1.0)
        assert [m.alert.finding.subject for _, m in transport.sent] == ["db:2", "db:3"]

    @pytest.mark.asyncio
    async def test_close_abandons_after_timeout(self, caplog) -> None:
        transport = RecordingTransport(delay=5.0)
        dispatcher = Dispatcher({"ch": transport}, timeout=10.0)
        dispatcher.start()
        dispatcher.dispatch(make_alert())
        await dispatcher.close(timeout=0.05)
        assert "drain timed out" in caplog.text


def test_from_config():
    config = NotifierConfig(
        channels=(ChannelConfig(name="a"),),
        routing={Severity.L3: ("a",)},
        retries=5,
        retry_delay=timedelta(milliseconds=500),
        timeout=timedelta(seconds=3),
        queue_size=7,
        overflow="reject",
    )
    dispatcher = Dispatcher.from_config(config, {"a": RecordingTransport("a")})
    assert dispatcher.channels_for(Severity.L3) == ("a",)
    assert dispatcher.channels_for(Severity.L1) == ("a",)
    assert dispatcher._retries == 5
    assert dispatcher._retry_delay == 0.5
    assert dispatcher._queue.maxsize == 7


def wecom_response(status_code: int, errcode: int = 0) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.headers = {}
    response.json.return_value = {"errcode": errcode}
    return response


@pytest.mark.asyncio
async def test_retry_resumes_after_delivered_parts():
    alert = make_alert()
    long_text = "\n".join("y" * 100 for _ in range(60))
    formatter = MagicMock()
    formatter.format.return_value = Message(title="t", text=long_text, severity=alert.severity, alert=alert)
    dispatcher = Dispatcher({"wecom": WeComTransport("https://qyapi.example.com/send")}, formatter=formatter)

    with (
        patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post,
        patch("powa_sentinel.dispatch.dispatcher.asyncio.sleep"),
    ):
        mock_post.side_effect = [wecom_response(200), wecom_response(503), wecom_response(200)]
        assert await dispatcher.deliver(alert)

    contents = [c.kwargs["json"]["markdown"]["content"] for c in mock_post.call_args_list]
    assert [c.rsplit("\n", 1)[-1] for c in contents] == ["*(Part 1/2)*", "*(Part 2/2)*", "*(Part 2/2)*"]
    assert dispatcher.stats.delivered == 1
