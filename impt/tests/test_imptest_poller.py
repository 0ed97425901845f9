from impt.imptest.events import AgentRestartedEvent, SessionStartEvent, UnknownEvent
from impt.imptest.poller import LogPoller
from impt.imptest.transport import TransportError
from impt.tests.build_api_stubs import StubClient, gateway_timeout, invalid_token, status, unit


def kinds(signals):
    return [signal.kind for signal in signals]


def test_ready_then_records_in_order():
    client = StubClient([[status("Agent restarted"), unit("s1", "SESSION_START")]])
    poller = LogPoller(client)
    signals = []
    for signal in poller.start("d1", "device"):
        signals.append(signal)
        if signal.kind == "log" and isinstance(signal.event, SessionStartEvent):
            poller.stop()

    assert kinds(signals) == ["ready", "log", "log", "done"]
    assert signals[1].event == AgentRestartedEvent()
    assert signals[2].event == SessionStartEvent(session_id="s1")


def test_token_expiry_reopens_stream_without_loss_or_duplication():
    client = StubClient(
        [
            [status("first")],
            invalid_token(),
            [status("second")],
        ]
    )
    poller = LogPoller(client)
    seen = []
    for signal in poller.start("d1", "device"):
        if signal.kind == "log":
            seen.append(signal.event.raw["message"])
            if len(seen) == 2:
                poller.stop()

    assert seen == ["first", "second"]
    assert poller.restarts == 1
    assert client.streams_opened == 2


def test_ready_is_signalled_once_across_restarts():
    client = StubClient([invalid_token(), invalid_token(), [status("x")]])
    poller = LogPoller(client)
    signals = []
    for signal in poller.start("d1", "device"):
        signals.append(signal)
        if signal.kind == "log":
            poller.stop()
    assert kinds(signals).count("ready") == 1
    assert poller.restarts == 2


def test_gateway_timeout_polls_again_silently():
    client = StubClient([gateway_timeout(), gateway_timeout(), [status("after")]])
    poller = LogPoller(client)
    signals = []
    for signal in poller.start("d1", "device"):
        signals.append(signal)
        if signal.kind == "log":
            poller.stop()

    assert kinds(signals) == ["ready", "log", "done"]
    assert client.streams_opened == 1
    assert client.cursor_fetches == 3


def test_stop_mid_batch_discards_remaining_records():
    client = StubClient([[status("one"), status("two"), status("three")]])
    poller = LogPoller(client)
    seen = []
    for signal in poller.start("d1", "device"):
        if signal.kind == "log":
            seen.append(signal.event.raw["message"])
            poller.stop()
    assert seen == ["one"]
    assert client.cursor_fetches == 1


def test_other_transport_errors_are_terminal():
    failure = TransportError("Build API error HTTP/500", status=500)
    client = StubClient([failure])
    signals = list(LogPoller(client).start("d1", "device"))
    assert kinds(signals) == ["ready", "error"]
    assert signals[-1].error is failure


def test_open_failure_is_reported_before_ready():
    class Broken(StubClient):
        def fetch_logs(self, device_id, since):
            raise TransportError('Build API error "DeviceNotFound": unknown device', code="DeviceNotFound")

    signals = list(LogPoller(Broken()).start("d1", "device"))
    assert kinds(signals) == ["error"]


def test_classification_error_is_delivered_as_log_signal():
    bad = {"type": "server.log", "message": "__IMPUNIT__ {broken"}
    client = StubClient([[bad, status("next")]])
    poller = LogPoller(client)
    signals = []
    for signal in poller.start("d1", "device"):
        signals.append(signal)
        if signal.kind == "log" and signal.event is not None:
            poller.stop()

    assert kinds(signals) == ["ready", "log", "log", "done"]
    assert signals[1].error is not None and signals[1].record is bad
    assert signals[2].event == UnknownEvent(raw=status("next"))
