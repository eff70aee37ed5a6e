import hashlib
import os
import time

import pytest
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from espnowsec.handshake import DataType, SecInfo, SecPacket, SecType, SecVersion
from espnowsec.initiator import BROADCAST_ADDR, SCAN_SENDS, Initiator
from espnowsec.sec1_proto import MsgType, SessionData
from espnowsec.utils import EspError, InvalidArgumentError, InvalidStateError

OWN_MAC = bytes.fromhex("020000000000")
MAC_A = bytes.fromhex("020000000001")
MAC_B = bytes.fromhex("020000000002")
MAC_C = bytes.fromhex("020000000003")
APP_KEY = bytes(range(32))
POP = "placeholder"


class FakeDevice:
    """A device that answers the security-1 handshake."""

    def __init__(self, mac, pop):
        self.mac = mac
        self.pop = pop.encode()
        self.app_key = None
        self.stream = None

    def receive(self, data):
        packet = SecPacket.unpack(data)
        if packet.type == SecType.HANDSHAKE:
            msg = SessionData.decode(packet.data)
            if msg.msg == MsgType.SESSION_COMMAND0:
                private = X25519PrivateKey.generate()
                self.pubkey = private.public_key().public_bytes(
                    Encoding.Raw, PublicFormat.Raw
                )
                shared = private.exchange(
                    X25519PublicKey.from_public_bytes(msg.client_pubkey)
                )
                digest = hashlib.sha256(self.pop).digest()
                key = bytes(a ^ b for a, b in zip(shared, digest))
                self.client_pubkey = msg.client_pubkey
                rand = os.urandom(16)
                self.stream = Cipher(algorithms.AES(key), modes.CTR(rand)).encryptor()
                reply = SessionData(
                    msg=MsgType.SESSION_RESPONSE0,
                    device_pubkey=self.pubkey,
                    device_random=rand,
                )
                return SecPacket(SecType.HANDSHAKE, reply.encode()).pack()
            if msg.msg == MsgType.SESSION_COMMAND1:
                check = self.stream.update(msg.client_verify_data)
                if check != self.pubkey:
                    return None
                verify = self.stream.update(self.client_pubkey)
                reply = SessionData(
                    msg=MsgType.SESSION_RESPONSE1, device_verify_data=verify
                )
                return SecPacket(SecType.HANDSHAKE, reply.encode()).pack()
        if packet.type == SecType.KEY:
            self.app_key = self.stream.update(packet.data)
            return SecPacket(SecType.KEY_RESP, packet.data).pack()
        return None


class FakeTransport:
    def __init__(self, devices=()):
        self.devices = {device.mac: device for device in devices}
        self.sent = []
        self.initiator = None

    def send(self, data_type, dest, data):
        self.sent.append((data_type, dest, bytes(data)))
        device = self.devices.get(dest)
        if device is None or data_type is not DataType.SECURITY:
            return
        reply = device.receive(data)
        if reply is not None:
            self.initiator.on_security(dest, reply)


def make_initiator(transport):
    initiator = Initiator(transport, OWN_MAC)
    transport.initiator = initiator
    initiator.scan_interval = 0.001
    initiator.recv_timeout = 0.01
    initiator.round_base_s = 0.3
    initiator.round_per_device_s = 0.0
    return initiator


def command0_count(transport, mac):
    count = 0
    for _, dest, data in transport.sent:
        if dest != mac:
            continue
        packet = SecPacket.unpack(data)
        if packet.type != SecType.HANDSHAKE:
            continue
        if SessionData.decode(packet.data).msg == MsgType.SESSION_COMMAND0:
            count += 1
    return count


def test_start_delivers_key_to_every_device():
    devices = [FakeDevice(MAC_A, POP), FakeDevice(MAC_B, POP)]
    transport = FakeTransport(devices)
    initiator = make_initiator(transport)
    result = initiator.start(APP_KEY, POP, [MAC_A, MAC_B])
    assert result.unfinished == []
    assert sorted(result.succeeded) == [MAC_A, MAC_B]
    assert all(device.app_key == APP_KEY for device in devices)


def test_first_frame_is_command0_packet():
    transport = FakeTransport([FakeDevice(MAC_A, POP)])
    initiator = make_initiator(transport)
    initiator.start(APP_KEY, POP, [MAC_A])
    data_type, dest, data = transport.sent[0]
    assert data_type is DataType.SECURITY
    assert dest == MAC_A
    assert data[0] == SecType.HANDSHAKE
    assert SessionData.decode(SecPacket.unpack(data).data).msg == MsgType.SESSION_COMMAND0


def test_wrong_pop_leaves_device_unfinished_after_retry():
    good = FakeDevice(MAC_A, POP)
    bad = FakeDevice(MAC_B, "password")
    transport = FakeTransport([good, bad])
    initiator = make_initiator(transport)
    initiator.round_base_s = 0.1
    result = initiator.start(APP_KEY, POP, [MAC_A, MAC_B])
    assert result.succeeded == [MAC_A]
    assert result.unfinished == [MAC_B]
    assert good.app_key == APP_KEY
    assert bad.app_key is None
    # two addresses give two rounds; the failing device is tried in both
    assert command0_count(transport, MAC_B) == 2
    assert command0_count(transport, MAC_A) == 1


def test_silent_device_is_not_succeeded():
    transport = FakeTransport()
    initiator = make_initiator(transport)
    initiator.round_base_s = 0.05
    result = initiator.start(APP_KEY, POP, [MAC_C])
    assert result.unfinished == [MAC_C]
    assert result.succeeded == []


@pytest.mark.parametrize(
    "app_key, pop, addrs",
    [
        (bytes(31), POP, [MAC_A]),
        ("not bytes", POP, [MAC_A]),
        (APP_KEY, None, [MAC_A]),
        (APP_KEY, POP, []),
        (APP_KEY, POP, [b"\x01\x02"]),
    ],
)
def test_start_rejects_bad_arguments(app_key, pop, addrs):
    initiator = make_initiator(FakeTransport())
    with pytest.raises(InvalidArgumentError):
        initiator.start(app_key, pop, addrs)


def test_stop_ends_handshake_early():
    class StoppingTransport(FakeTransport):
        def send(self, data_type, dest, data):
            super().send(data_type, dest, data)
            self.initiator.stop()

    transport = StoppingTransport()
    initiator = make_initiator(transport)
    initiator.round_base_s = 5.0
    started = time.monotonic()
    result = initiator.start(APP_KEY, POP, [MAC_A, MAC_B])
    assert time.monotonic() - started < 2.0
    assert sorted(result.unfinished) == [MAC_A, MAC_B]


def test_start_while_running_is_refused():
    class NestedTransport(FakeTransport):
        def __init__(self):
            super().__init__()
            self.errors = []

        def send(self, data_type, dest, data):
            try:
                self.initiator.start(APP_KEY, POP, [MAC_B])
            except InvalidStateError as exc:
                self.errors.append(type(exc))
            self.initiator.stop()

    transport = NestedTransport()
    initiator = make_initiator(transport)
    result = initiator.start(APP_KEY, POP, [MAC_A])
    assert transport.errors[:1] == [InvalidStateError]
    assert result.unfinished == [MAC_A]
    assert result.succeeded == []


def test_on_security_without_handshake_returns_false():
    initiator = make_initiator(FakeTransport())
    assert initiator.on_security(MAC_A, b"\x02\x00") is False


def test_on_security_queue_full_raises():
    class FloodingTransport(FakeTransport):
        error = None

        def send(self, data_type, dest, data):
            frame = SecPacket(SecType.KEY_RESP, b"").pack()
            first = self.initiator.on_security(dest, frame)
            try:
                self.initiator.on_security(dest, frame)
            except EspError as exc:
                self.error = exc
            self.first = first

    transport = FloodingTransport()
    initiator = make_initiator(transport)
    initiator.start(APP_KEY, POP, [MAC_A])
    assert transport.first is True
    assert isinstance(transport.error, EspError)


def test_on_security_rejects_empty_data():
    initiator = make_initiator(FakeTransport())
    with pytest.raises(InvalidArgumentError):
        initiator.on_security(MAC_A, b"")


class ScanTransport(FakeTransport):
    def __init__(self, infos):
        super().__init__()
        self.infos = infos

    def send(self, data_type, dest, data):
        self.sent.append((data_type, dest, bytes(data)))
        for mac, info, rssi, channel in self.infos:
            self.initiator.on_status(mac, info.pack(), rssi, channel)


def test_scan_collects_unique_responders():
    infos = [
        (MAC_A, SecInfo(SecType.INFO, SecVersion.NONE), -40, 1),
        (MAC_B, SecInfo(SecType.INFO, SecVersion.V1_0, OWN_MAC), -50, 6),
        (MAC_C, SecInfo(SecType.INFO, SecVersion.V1_0, MAC_A), -60, 11),
    ]
    transport = ScanTransport(infos)
    initiator = make_initiator(transport)
    found = initiator.scan(10)
    assert [responder.mac for responder in found] == [MAC_A, MAC_C]
    assert found[0].rssi == -40 and found[0].channel == 1
    assert found[1].sec_ver == SecVersion.V1_0
    assert initiator.scan_results == found


def test_scan_sends_request_at_most_five_times():
    transport = ScanTransport([])
    initiator = make_initiator(transport)
    initiator.scan(10)
    assert len(transport.sent) == SCAN_SENDS
    assert all(
        sent == (DataType.SECURITY, BROADCAST_ADDR, b"\x00") for sent in transport.sent
    )


def test_scan_without_time_sends_nothing():
    transport = ScanTransport([(MAC_A, SecInfo(SecType.INFO), 0, 1)])
    initiator = make_initiator(transport)
    assert initiator.scan(0) == []
    assert transport.sent == []


def test_clear_scan_forgets_results():
    transport = ScanTransport([(MAC_A, SecInfo(SecType.INFO), 0, 1)])
    initiator = make_initiator(transport)
    assert len(initiator.scan(10)) == 1
    initiator.clear_scan()
    assert initiator.scan_results == []


def test_on_status_outside_scan_is_ignored():
    initiator = make_initiator(FakeTransport())
    assert initiator.on_status(MAC_A, SecInfo(SecType.INFO).pack(), -30, 1) is False
    assert initiator.scan_results == []


def test_on_status_ignores_other_types_during_scan():
    class OtherTransport(ScanTransport):
        def send(self, data_type, dest, data):
            self.sent.append((data_type, dest, bytes(data)))
            self.results = [
                self.initiator.on_status(MAC_A, SecInfo(SecType.REQUEST).pack(), 0, 1),
                self.initiator.on_status(MAC_B, SecInfo(SecType.INFO).pack(), 0, 1),
            ]

    transport = OtherTransport([])
    initiator = make_initiator(transport)
    found = initiator.scan(0.001)
    assert transport.results == [False, True]
    assert [responder.mac for responder in found] == [MAC_B]


def test_initiator_rejects_bad_own_mac():
    with pytest.raises(InvalidArgumentError):
        Initiator(FakeTransport(), b"\x00")