"""Initiator side of the key handshake: finding devices and handing them the app key."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Iterable, Optional, Protocol, Union

from .client_security1 import ClientSession, PublicSession
from .handshake import (
    DataType,
    SecInfo,
    SecPacket,
    SecResponder,
    SecResult,
    SecType,
    SecVersion,
)
from .security import APP_KEY_LEN
from .utils import MAC_LEN, EspError, InvalidArgumentError, InvalidStateError, mac2str

__all__ = [
    "BROADCAST_ADDR",
    "MAX_SESSIONS",
    "SCAN_SENDS",
    "Transport",
    "Initiator",
]

BROADCAST_ADDR = b"\xff" * MAC_LEN
MAX_SESSIONS = 100  # sessions handled in one round
SCAN_SENDS = 5  # scan requests sent at most

_log = logging.getLogger("espnow_sec_init")

BytesLike = Union[bytes, bytearray, memoryview]


class Transport(Protocol):
    """What the initiator needs from the radio link."""

    def send(self, data_type: DataType, dest: bytes, data: bytes) -> None:
        """Send ``data`` on the channel ``data_type`` to the MAC ``dest``."""


def _check_mac(mac: object, what: str) -> bytes:
    if not isinstance(mac, (bytes, bytearray, memoryview)):
        raise InvalidArgumentError(f"{what} must be bytes-like")
    mac = bytes(mac)
    if len(mac) != MAC_LEN:
        raise InvalidArgumentError(f"{what} must be {MAC_LEN} bytes, got {len(mac)}")
    return mac


def _swap_remove(addrs: list[bytes], addr: bytes) -> bool:
    """Remove ``addr`` by moving the last entry into its place."""
    try:
        index = addrs.index(addr)
    except ValueError:
        return False
    last = addrs.pop()
    if index < len(addrs):
        addrs[index] = last
    return True


class Initiator:
    """Scans for devices and runs the security-1 handshake to give them a key.

    The transport delivers incoming frames by calling on_status() for the
    security-status channel and on_security() for the security channel.
    """

    def __init__(self, transport: Transport, own_mac: BytesLike) -> None:
        self.transport = transport
        self.own_mac = _check_mac(own_mac, "own_mac")
        self.scan_interval = 0.5
        self.recv_timeout = 0.1
        self.round_base_s = 1.2
        self.round_per_device_s = 0.3
        self._lock = threading.Lock()
        self._responders: list[SecResponder] = []
        self._scanning = False
        self._queue: Optional[queue.Queue] = None
        self._active = False
        self._running = False

    @property
    def scan_results(self) -> list[SecResponder]:
        """Devices found by the last scan."""
        with self._lock:
            return list(self._responders)

    def clear_scan(self) -> None:
        """Forget the devices found by the last scan."""
        with self._lock:
            self._responders = []

    def on_status(
        self, src_addr: BytesLike, data: BytesLike, rssi: int = 0, channel: int = 0
    ) -> bool:
        """Handle a security-status frame; returns whether a device was recorded."""
        src = _check_mac(src_addr, "src_addr")
        data = bytes(data)
        if not data:
            raise InvalidArgumentError("data must not be empty")
        if not self._scanning or data[0] != SecType.INFO:
            return False
        info = SecInfo.unpack(data)
        with self._lock:
            if any(responder.mac == src for responder in self._responders):
                return False
            if info.sec_ver == SecVersion.V1_0 and info.client_mac == self.own_mac:
                _log.debug("Device security has been configured by this client, skip.")
                return False
            self._responders.append(SecResponder(src, rssi, channel, info.sec_ver))
        _log.debug(
            "Device %s channel %d rssi %d version %d",
            mac2str(src),
            channel,
            rssi,
            int(info.sec_ver),
        )
        return True

    def scan(self, wait_s: float) -> list[SecResponder]:
        """Broadcast scan requests for up to ``wait_s`` seconds and list the replies."""
        self.clear_scan()
        request = bytes([SecType.REQUEST])
        self._scanning = True
        start = time.monotonic()
        try:
            for _ in range(SCAN_SENDS):
                if wait_s - (time.monotonic() - start) <= 0:
                    break
                self.transport.send(DataType.SECURITY, BROADCAST_ADDR, request)
                time.sleep(self.scan_interval)
        finally:
            self._scanning = False
        return self.scan_results

    def on_security(self, src_addr: BytesLike, data: BytesLike) -> bool:
        """Queue a handshake frame; returns False when no handshake is running."""
        src = _check_mac(src_addr, "src_addr")
        data = bytes(data)
        if not data:
            raise InvalidArgumentError("data must not be empty")
        pending = self._queue
        if pending is None:
            return False
        try:
            pending.put_nowait((src, data))
        except queue.Full as exc:
            _log.warning("Send sec queue failed")
            raise EspError("security queue is full") from exc
        return True

    def start(
        self, app_key: BytesLike, pop: Union[str, bytes], addrs: Iterable[BytesLike]
    ) -> SecResult:
        """Hand ``app_key`` to every device in ``addrs``, proving possession of ``pop``."""
        if not isinstance(app_key, (bytes, bytearray, memoryview)):
            raise InvalidArgumentError("app_key must be bytes-like")
        app_key = bytes(app_key)
        if len(app_key) != APP_KEY_LEN:
            raise InvalidArgumentError(
                f"app_key must be {APP_KEY_LEN} bytes, got {len(app_key)}"
            )
        if pop is None:
            raise InvalidArgumentError("pop must be given")
        macs = [_check_mac(addr, "address") for addr in addrs]
        if not macs:
            raise InvalidArgumentError("no addresses given")

        with self._lock:
            if self._active:
                raise InvalidStateError("a handshake is already running")
            self._active = True
            self._running = True
            pending: queue.Queue = queue.Queue(maxsize=len(macs))
            self._queue = pending
        try:
            return self._run(app_key, pop, macs, pending)
        finally:
            with self._lock:
                self._running = False
                self._active = False
                self._queue = None

    def stop(self) -> None:
        """Ask a running handshake to finish early."""
        self._running = False

    def _run(
        self, app_key: bytes, pop: Union[str, bytes], macs: list[bytes], pending: queue.Queue
    ) -> SecResult:
        result = SecResult(unfinished=list(macs))
        total = len(macs)
        rounds = total // MAX_SESSIONS + (1 if total % MAX_SESSIONS == 0 else 2)
        for count in range(rounds):
            if not result.unfinished or not self._running:
                break
            current = result.unfinished[:MAX_SESSIONS]
            _log.info(
                "count: %d, requested_num: %d, unfinished_num: %d, successed_num: %d",
                count,
                len(current),
                result.unfinished_num,
                result.succeeded_num,
            )
            self._run_round(current, app_key, pop, result, pending)
        return result

    def _run_round(
        self,
        current: list[bytes],
        app_key: bytes,
        pop: Union[str, bytes],
        result: SecResult,
        pending: queue.Queue,
    ) -> None:
        public = PublicSession()
        sessions = []
        for session_id in range(len(current)):
            session = ClientSession(public)
            session.new_session(session_id)
            sessions.append(session)
        try:
            if self._send_command0(public, current):
                self._receive(current, sessions, app_key, pop, result, pending)
        finally:
            for session_id, session in enumerate(sessions):
                try:
                    session.close_session(session_id)
                except InvalidStateError:
                    pass

    def _send_command0(self, public: PublicSession, current: list[bytes]) -> bool:
        try:
            packet = SecPacket(SecType.HANDSHAKE, public.command0()).pack()
        except EspError as exc:
            _log.warning("espnow-session cm0 prepare failed: %s", exc)
            return False
        for addr in current:
            try:
                self.transport.send(DataType.SECURITY, addr, packet)
            except Exception as exc:
                _log.warning("espnow-session cm0 send failed: %s", exc)
                return False
        return True

    def _receive(
        self,
        current: list[bytes],
        sessions: list[ClientSession],
        app_key: bytes,
        pop: Union[str, bytes],
        result: SecResult,
        pending: queue.Queue,
    ) -> None:
        index = {addr: session_id for session_id, addr in enumerate(current)}
        deadline = (
            time.monotonic() + self.round_base_s + self.round_per_device_s * len(current)
        )
        done = 0
        while time.monotonic() < deadline and done < len(current) and self._running:
            try:
                src, payload = pending.get(timeout=self.recv_timeout)
            except queue.Empty:
                continue
            session_id = index.get(src)
            if session_id is None:
                _log.warning("addr %s not searched", mac2str(src))
                continue
            try:
                packet = SecPacket.unpack(payload)
            except InvalidArgumentError as exc:
                _log.warning("bad packet from %s: %s", mac2str(src), exc)
                continue

            if packet.type == SecType.KEY_RESP:
                _log.debug("Session %d successful, mac %s", session_id, mac2str(src))
                if _swap_remove(result.unfinished, src):
                    result.succeeded.append(src)
                    done += 1
            elif packet.type == SecType.HANDSHAKE:
                reply = self._handshake_reply(
                    sessions[session_id], session_id, packet.data, app_key, pop
                )
                if reply is None:
                    continue
                try:
                    self.transport.send(DataType.SECURITY, src, reply)
                except Exception as exc:
                    _log.warning("espnow-session send failed: %s", exc)

    @staticmethod
    def _handshake_reply(
        session: ClientSession,
        session_id: int,
        data: bytes,
        app_key: bytes,
        pop: Union[str, bytes],
    ) -> Optional[bytes]:
        try:
            out = session.handle_request(session_id, data, pop)
        except EspError as exc:
            _log.error("espnow-session handler failed: %s", exc)
            return None
        if out:
            return SecPacket(SecType.HANDSHAKE, out).pack()
        try:
            encrypted = session.encrypt(session_id, app_key)
        except EspError as exc:
            _log.error("Encryption of data failed for session id %d: %s", session_id, exc)
            return None
        return SecPacket(SecType.KEY, encrypted).pack()