"""
Tests for port forwarding: strategy chain, combined protocols, NAT-PMP wire
format and UPnP client fallback. No test touches the network.
"""

import struct
from unittest.mock import Mock, patch

import pytest

from quiver.errors import NetworkUnavailableError, NoUPnPServiceError, ValidationFailedError
from quiver.netbridge import (
    ForwardingMethod,
    NATPMPClient,
    NATPMPError,
    Netbridge,
    Port,
    UPnPManager,
    split_protocols,
)
from quiver.netbridge.bridge import FORWARD_FAILED, manual_assignment
from quiver.netbridge.natpmp import (
    GATEWAY_TIMEOUT,
    OP_MAP_TCP,
    OP_MAP_UDP,
    build_mapping_request,
    find_default_gateway,
    gateway_candidates,
    parse_external_ip,
)
from quiver.netbridge.port import parse_port, port_key


class FakeStrategy:
    def __init__(self, method, fail_protocols=(), ip="203.0.113.7"):
        self.method = method
        self.fail_protocols = set(fail_protocols)
        self.ip = ip
        self.forwarded = []
        self.closed = []

    def forward_port(self, port):
        if port.protocol in self.fail_protocols:
            raise NetworkUnavailableError(f"{self.method.value} refused {port.protocol}")
        self.forwarded.append((port.port, port.protocol))

    def close_port(self, port):
        if port.protocol in self.fail_protocols:
            raise NetworkUnavailableError("nope")
        self.closed.append((port.port, port.protocol))

    def get_public_ip(self):
        if self.ip is None:
            raise NetworkUnavailableError("no ip")
        return self.ip


def bridge(*strategies, start=8000, end=9000):
    return Netbridge(list(strategies), port_range_start=start, port_range_end=end, local_ip="192.168.1.50")


class TestPortHelpers:
    def test_split_protocols(self):
        assert split_protocols("tcp") == ["tcp"]
        assert split_protocols("TCP/UDP") == ["tcp", "udp"]
        assert split_protocols("tcp+udp") == ["tcp", "udp"]
        with pytest.raises(ValidationFailedError):
            split_protocols("sctp")

    def test_port_key(self):
        assert port_key(25565, "tcp") == 25565
        assert port_key(25565, "udp") == -25565

    @pytest.mark.parametrize("value,expected", [
        ("7777", 7777), (" 80 ", 80), ("0", None), ("70000", None), ("abc", None), (None, None),
    ])
    def test_parse_port(self, value, expected):
        assert parse_port(value) == expected


class TestChain:
    def test_first_strategy_wins(self):
        upnp = FakeStrategy(ForwardingMethod.UPNP)
        nat = FakeStrategy(ForwardingMethod.NATPMP)
        result = bridge(upnp, nat).open_port(25565, "tcp")
        assert result.success and result.method is ForwardingMethod.UPNP
        assert nat.forwarded == []

    def test_falls_back_to_natpmp(self):
        upnp = FakeStrategy(ForwardingMethod.UPNP, fail_protocols={"tcp"})
        nat = FakeStrategy(ForwardingMethod.NATPMP)
        b = bridge(upnp, nat)
        result = b.open_port(25565, "tcp")
        assert result.success and result.method is ForwardingMethod.NATPMP
        assert [p.port for p in b.list_open_ports()] == [25565]

    def test_all_fail_is_result_not_exception(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP, {"tcp"}), FakeStrategy(ForwardingMethod.NATPMP, {"tcp"}))
        result = b.open_port(25565, "tcp")
        assert not result.success
        assert result.error == FORWARD_FAILED
        assert b.list_open_ports() == []

    def test_unknown_protocol_raises(self):
        with pytest.raises(ValidationFailedError):
            bridge(FakeStrategy(ForwardingMethod.UPNP)).open_port(1, "icmp")


class TestCombinedProtocols:
    def test_one_side_succeeds(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP, fail_protocols={"udp"}))
        result = b.open_port(25565, "tcp/udp")
        assert result.success
        assert result.error is None
        assert [(p.port, p.protocol) for p in b.list_open_ports()] == [(25565, "tcp")]

    def test_both_fail_reports_both(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP, fail_protocols={"tcp", "udp"}))
        result = b.open_port(25565, "tcp/udp")
        assert not result.success
        assert result.error.startswith("tcp: ")
        assert "; udp: " in result.error

    def test_tcp_and_udp_tracked_separately(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP))
        b.open_port(27015, "tcp+udp")
        assert [(p.port, p.protocol) for p in b.list_open_ports()] == [(27015, "tcp"), (27015, "udp")]
        b.close_port(27015, "udp")
        assert [(p.port, p.protocol) for p in b.list_open_ports()] == [(27015, "tcp")]


class TestAutoAssignment:
    def test_skips_tracked_ports(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP), start=8000, end=8010)
        with patch("quiver.netbridge.bridge.is_port_available", return_value=True):
            first = b.open_port_auto("tcp")
            second = b.open_port_auto("tcp")
        assert first.port.port == 8000
        assert second.port.port == 8001

    def test_user_value_used(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP))
        assert b.assign_port_variable("7777", "tcp").port.port == 7777

    def test_range_exhausted(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP), start=8000, end=8001)
        with patch("quiver.netbridge.bridge.is_port_available", return_value=False):
            result = b.assign_port_variable(None, "tcp")
        assert not result.success
        assert result.method is ForwardingMethod.MANUAL
        assert result.port.port == 8001

    def test_manual_assignment(self):
        result = manual_assignment("not-a-port", "udp", 8000, 8000)
        assert result.method is ForwardingMethod.MANUAL
        assert result.port.port == 8000

    def test_manual_assignment_skips_taken(self):
        with patch("quiver.netbridge.bridge.is_port_available", return_value=True):
            result = manual_assignment(None, "tcp", 8000, 8010, skip={8000, 8001})
        assert result.port.port == 8002

    def test_auto_skips_given_ports(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP), start=8000, end=8010)
        with patch("quiver.netbridge.bridge.is_port_available", return_value=True):
            result = b.open_port_auto("tcp", skip={8000})
        assert result.port.port == 8001

    def test_failed_forwards_do_not_share_a_port(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP, fail_protocols={"tcp", "udp"}), start=8000, end=8010)
        assigned = set()
        with patch("quiver.netbridge.bridge.is_port_available", return_value=True):
            first = b.assign_port_variable(None, "tcp", assigned)
            assigned.add(first.port.port)
            second = b.assign_port_variable(None, "udp", assigned)
        assert not first.success and not second.success
        assert (first.port.port, second.port.port) == (8000, 8001)

    def test_reserved_candidate_is_skipped(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP), start=8000, end=8010)
        b._reserved.add(8000)
        with patch("quiver.netbridge.bridge.is_port_available", return_value=True):
            assert b.find_available_port() == 8001

    def test_reservation_released_after_open(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP, fail_protocols={"tcp"}), start=8000, end=8010)
        with patch("quiver.netbridge.bridge.is_port_available", return_value=True):
            b.open_port_auto("tcp")
        assert b._reserved == set()


class TestPublicIP:
    def test_refresh_uses_next_strategy(self):
        b = bridge(FakeStrategy(ForwardingMethod.UPNP, ip=None), FakeStrategy(ForwardingMethod.NATPMP))
        assert b.get_public_ip() == "0.0.0.0"
        assert b.refresh_public_ip() == "203.0.113.7"
        assert b.get_public_ip() == "203.0.113.7"

    def test_refresh_all_fail(self):
        with pytest.raises(NetworkUnavailableError):
            bridge(FakeStrategy(ForwardingMethod.UPNP, ip=None)).refresh_public_ip()

    def test_create_prefers_upnp(self):
        upnp = Mock(get_public_ip=Mock(return_value="198.51.100.1"))
        b = Netbridge.create(8000, 9000, upnp=upnp)
        assert [s.method for s in b.strategies] == [ForwardingMethod.UPNP]
        assert b.get_public_ip() == "198.51.100.1"

    def test_create_falls_back_to_natpmp(self):
        upnp = Mock(get_public_ip=Mock(side_effect=NoUPnPServiceError()))
        client = Mock(get_external_ip=Mock(return_value="198.51.100.2"))
        with patch("quiver.netbridge.bridge.NATPMPClient.create", return_value=client):
            b = Netbridge.create(8000, 9000, upnp=upnp)
        assert [s.method for s in b.strategies] == [ForwardingMethod.UPNP, ForwardingMethod.NATPMP]
        assert b.get_public_ip() == "198.51.100.2"

    def test_create_both_fail(self):
        upnp = Mock(get_public_ip=Mock(side_effect=NoUPnPServiceError()))
        with patch("quiver.netbridge.bridge.NATPMPClient.create", side_effect=NATPMPError("no gateway")):
            with pytest.raises(NetworkUnavailableError):
                Netbridge.create(8000, 9000, upnp=upnp)


class FakeSocket:
    def __init__(self, response: bytes = b"", error: Exception = None):
        self.response = response
        self.error = error
        self.sent = []
        self.closed = False

    def settimeout(self, t):
        self.timeout = t

    def sendto(self, payload, addr):
        self.sent.append((payload, addr))

    def recvfrom(self, bufsize):
        if self.error:
            raise self.error
        return self.response, ("192.168.1.1", 5351)

    def close(self):
        self.closed = True


class TestNATPMP:
    def test_opcodes(self):
        assert (OP_MAP_UDP, OP_MAP_TCP) == (1, 2)

    def test_mapping_request_layout(self):
        req = build_mapping_request(OP_MAP_TCP, 25565, 25565, 3600)
        assert len(req) == 12
        assert struct.unpack(">BBHHHI", req) == (0, 2, 0, 25565, 25565, 3600)

    def test_external_ip(self):
        sock = FakeSocket(struct.pack(">BBHI", 0, 128, 0, 1234) + bytes([203, 0, 113, 9]))
        client = NATPMPClient("192.168.1.1", socket_factory=lambda: sock)
        assert client.get_external_ip() == "203.0.113.9"
        assert sock.sent == [(b"\x00\x00", ("192.168.1.1", 5351))]
        assert sock.closed

    def test_mapping_success(self):
        resp = struct.pack(">BBHIHHI", 0, OP_MAP_UDP + 128, 0, 1, 27015, 27015, 86400)
        sock = FakeSocket(resp)
        client = NATPMPClient("192.168.1.1", socket_factory=lambda: sock)
        client.forward_port(Port(name="p", port=27015, protocol="udp"))
        payload, _ = sock.sent[0]
        assert struct.unpack(">BBHHHI", payload)[1] == OP_MAP_UDP

    def test_remove_sends_zero_lifetime(self):
        resp = struct.pack(">BBHIHHI", 0, OP_MAP_TCP + 128, 0, 1, 0, 80, 0)
        sock = FakeSocket(resp)
        NATPMPClient("gw", socket_factory=lambda: sock).close_port(Port(name="p", port=80))
        fields = struct.unpack(">BBHHHI", sock.sent[0][0])
        assert fields[3:] == (0, 80, 0)

    def test_result_code_error(self):
        resp = struct.pack(">BBHIHHI", 0, OP_MAP_TCP + 128, 2, 1, 80, 80, 0)
        client = NATPMPClient("gw", socket_factory=lambda: FakeSocket(resp))
        with pytest.raises(NATPMPError, match="not authorized"):
            client.forward_port(Port(name="p", port=80))

    def test_short_response(self):
        with pytest.raises(NATPMPError):
            parse_external_ip(b"\x00\x80\x00\x00")

    def test_socket_timeout_becomes_network_error(self):
        client = NATPMPClient("gw", socket_factory=lambda: FakeSocket(error=TimeoutError("timed out")))
        with pytest.raises(NetworkUnavailableError):
            client.get_external_ip()

    def test_gateway_candidates(self):
        assert gateway_candidates("10.0.5.23") == ["10.0.5.1", "10.0.5.254"]
        assert gateway_candidates("bogus") == []

    def test_default_gateway_falls_back_to_254(self):
        silent = FakeSocket(error=TimeoutError("timed out"))
        answering = FakeSocket(struct.pack(">BBHI", 0, 128, 0, 99) + bytes([198, 51, 100, 4]))
        sockets = iter([silent, answering])
        gateway = find_default_gateway(local_ip="192.168.1.50", socket_factory=lambda: next(sockets))
        assert gateway == "192.168.1.254"
        assert silent.sent[0][1] == ("192.168.1.1", 5351)
        assert answering.sent[0][1] == ("192.168.1.254", 5351)
        assert silent.timeout == GATEWAY_TIMEOUT

    def test_default_gateway_prefers_first_candidate(self):
        answering = FakeSocket(struct.pack(">BBHI", 0, 128, 0, 99) + bytes([198, 51, 100, 4]))
        factory = Mock(return_value=answering)
        assert find_default_gateway(local_ip="10.0.0.7", socket_factory=factory) == "10.0.0.1"
        assert factory.call_count == 1

    def test_default_gateway_none_answer(self):
        with pytest.raises(NATPMPError, match="no responsive"):
            find_default_gateway(local_ip="192.168.1.50",
                                 socket_factory=lambda: FakeSocket(error=TimeoutError("timed out")))


class TestUPnP:
    def test_no_services(self):
        manager = UPnPManager(discover=lambda: ([], ["ssdp: timeout"]))
        with pytest.raises(NoUPnPServiceError) as exc:
            manager.get_public_ip()
        assert exc.value.errors == ["ssdp: timeout"]

    def test_discovery_memoized(self):
        client = Mock(get_external_ip=Mock(return_value="198.51.100.3"))
        discover = Mock(return_value=([client], []))
        manager = UPnPManager(discover=discover)
        manager.get_public_ip()
        manager.get_public_ip()
        assert discover.call_count == 1
        manager.refresh_services()
        assert discover.call_count == 2

    def test_second_client_used_when_first_fails(self):
        bad = Mock(add_port_mapping=Mock(side_effect=RuntimeError("500")))
        good = Mock()
        manager = UPnPManager(discover=lambda: ([bad, good], []))
        manager.forward_port(Port(name="p", port=25565, host="192.168.1.50"))
        good.add_port_mapping.assert_called_once()
        args = good.add_port_mapping.call_args[0]
        assert args[:4] == (25565, "tcp", 25565, "192.168.1.50")

    def test_all_clients_fail(self):
        bad = Mock(delete_port_mapping=Mock(side_effect=RuntimeError("500")))
        manager = UPnPManager(discover=lambda: ([bad], []))
        with pytest.raises(NetworkUnavailableError):
            manager.close_port(Port(name="p", port=25565))
