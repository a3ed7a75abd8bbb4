from sendrecv.relay.protocol import RelayProtocol
from sendrecv.relay.registry import RegistrationState

from fakes import RecordingTransport


def _connect(relay: RelayProtocol, hello: str = None):
    transport = RecordingTransport()
    record = relay.open(transport)
    if hello is not None:
        relay.handle_text(record, f"HELLO {hello}")
    return record, transport


def test_hello_registers_and_acknowledges() -> None:
    relay = RelayProtocol()
    record, transport = _connect(relay, "7")

    assert transport.sent == ["HELLO"]
    assert record.state is RegistrationState.REGISTERED
    assert relay.registry.lookup("7") is record


def test_duplicate_hello_gets_error_and_connection_stays_usable() -> None:
    relay = RelayProtocol()
    _connect(relay, "7")
    record, transport = _connect(relay, "7")

    assert transport.sent[0].startswith("ERROR ")
    assert record.state is RegistrationState.UNREGISTERED

    relay.handle_text(record, "HELLO 8")
    assert transport.sent[-1] == "HELLO"


def test_messages_before_hello_are_rejected() -> None:
    relay = RelayProtocol()
    record, transport = _connect(relay)

    relay.handle_text(record, "SESSION 5")
    relay.handle_text(record, '{"sdp": {}}')

    assert all(message.startswith("ERROR") for message in transport.sent)
    assert len(transport.sent) == 2


def test_hello_twice_is_an_error() -> None:
    relay = RelayProtocol()
    record, transport = _connect(relay, "1")

    relay.handle_text(record, "HELLO 2")

    assert transport.sent[-1].startswith("ERROR")
    assert relay.registry.lookup("1") is record


def test_session_notifies_target_then_acknowledges() -> None:
    relay = RelayProtocol()
    _, a_transport = _connect(relay, "a")
    _, b_transport = _connect(relay, "b")
    a_record = relay.registry.lookup("a")

    relay.handle_text(a_record, "SESSION b")

    assert a_transport.sent[-1] == "SESSION_OK"
    assert b_transport.sent[-1] == "SESSION_REQUEST a"


def test_session_with_unknown_and_busy_peers() -> None:
    relay = RelayProtocol()
    a, a_transport = _connect(relay, "a")
    b, _ = _connect(relay, "b")
    c, c_transport = _connect(relay, "c")

    relay.handle_text(a, "SESSION nobody")
    assert a_transport.sent[-1] == "ERROR peer 'nobody' not found"

    relay.handle_text(a, "SESSION b")
    relay.handle_text(c, "SESSION b")
    assert c_transport.sent[-1] == "ERROR peer 'b' busy"
    assert b.peer is a


def test_payload_before_session_is_rejected() -> None:
    relay = RelayProtocol()
    record, transport = _connect(relay, "a")

    relay.handle_text(record, '{"ice": {"candidate": "x", "sdpMLineIndex": 0}}')
    relay.handle_text(record, "OFFER_REQUEST")

    assert transport.sent[1:] == ["ERROR not in a session; send 'SESSION <peer-id>' first"] * 2


def test_paired_payloads_are_forwarded_untouched_in_order() -> None:
    relay = RelayProtocol()
    a, _ = _connect(relay, "a")
    b, b_transport = _connect(relay, "b")
    relay.handle_text(a, "SESSION b")

    payloads = ['{"sdp": {"type": "offer", "sdp": "v=0"}}', "OFFER_REQUEST", "anything at all"]
    for payload in payloads:
        relay.handle_text(a, payload)
    relay.handle_text(b, "reply")

    assert b_transport.sent[-3:] == payloads
    assert a.transport.sent[-1] == "reply"


def test_disconnect_notifies_and_closes_peer() -> None:
    relay = RelayProtocol()
    a, _ = _connect(relay, "a")
    b, b_transport = _connect(relay, "b")
    relay.handle_text(a, "SESSION b")

    relay.close(a)

    assert b_transport.sent[-1] == "SESSION_CLOSED a"
    assert b_transport.closed is not None
    assert relay.registry.lookup("a") is None


def test_disconnect_of_unpaired_connection_is_quiet() -> None:
    relay = RelayProtocol()
    a, _ = _connect(relay, "a")
    b, b_transport = _connect(relay, "b")

    relay.close(a)

    assert b_transport.sent == ["HELLO"]
    assert b_transport.closed is None
    assert relay.registry.snapshot()["registered"] == ["b"]
