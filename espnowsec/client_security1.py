"""Client side of the security-1 session: X25519 key exchange and AES-256-CTR."""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
from typing import Optional, Union

from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .sec1_proto import SEC_VER, MsgType, SessionData
from .utils import EspError, InvalidArgumentError, InvalidStateError

__all__ = ["PUBLIC_KEY_LEN", "SZ_RANDOM", "PublicSession", "ClientSession"]

PUBLIC_KEY_LEN = 32
SZ_RANDOM = 16

_log = logging.getLogger("client_security1")

Pop = Union[str, bytes, bytearray, None]


class _State(enum.IntEnum):
    RESP0 = 0
    RESP1 = 1
    DONE = 2


def _pop_bytes(pop: Pop) -> bytes:
    if pop is None:
        return b""
    if isinstance(pop, str):
        return pop.encode("utf-8")
    if isinstance(pop, (bytes, bytearray, memoryview)):
        return bytes(pop)
    raise InvalidArgumentError("pop must be str, bytes or None")


class PublicSession:
    """The client's ephemeral key pair, shared by all of its sessions."""

    def __init__(self) -> None:
        self._private_key: Optional[X25519PrivateKey] = None
        self.client_pubkey = bytes(PUBLIC_KEY_LEN)

    @property
    def ready(self) -> bool:
        return self._private_key is not None

    def command0(self) -> bytes:
        """Generate a fresh key pair and return the encoded Command0."""
        self._private_key = X25519PrivateKey.generate()
        self.client_pubkey = self._private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )
        return SessionData(
            msg=MsgType.SESSION_COMMAND0,
            sec_ver=SEC_VER,
            client_pubkey=self.client_pubkey,
        ).encode()

    def shared_secret(self, device_pubkey: bytes) -> bytes:
        if self._private_key is None:
            raise InvalidStateError("Command0 has not been written")
        try:
            peer = X25519PublicKey.from_public_bytes(device_pubkey)
            return self._private_key.exchange(peer)
        except ValueError as exc:
            _log.error("Failed to compute the shared key: %s", exc)
            raise EspError(f"key exchange failed: {exc}") from exc


class ClientSession:
    """One client session with a single device."""

    def __init__(self, public: PublicSession) -> None:
        self.public = public
        self.id: Optional[int] = None
        self._reset()

    def _reset(self) -> None:
        self.state = _State.RESP0
        self.device_pubkey = bytes(PUBLIC_KEY_LEN)
        self.sym_key = bytes(PUBLIC_KEY_LEN)
        self.rand = bytes(SZ_RANDOM)
        self._ctr = None

    @property
    def established(self) -> bool:
        return self.state is _State.DONE

    def new_session(self, session_id: int) -> None:
        """Start session ``session_id``, closing any session already open."""
        if self.id is not None:
            _log.error("Closing old session with id %d", self.id)
            self.close_session(self.id)
        self.id = session_id

    def close_session(self, session_id: int) -> None:
        if self.id is None or self.id != session_id:
            _log.error("Attempt to close invalid session")
            raise InvalidStateError(f"session {session_id} is not open")
        self._reset()
        self.id = None

    def _check_id(self, session_id: int) -> None:
        if self.id is None or self.id != session_id:
            raise InvalidStateError(f"invalid session id {session_id} (expected {self.id})")

    def handle_request(self, session_id: int, data: bytes, pop: Pop = None) -> Optional[bytes]:
        """Process a device response; returns the next command, or None when done."""
        self._check_id(session_id)
        request = SessionData.decode(data)
        if request.sec_ver != SEC_VER:
            _log.error("Security version mismatch. Closing connection")
            raise InvalidArgumentError(f"security version {request.sec_ver} is not supported")
        if request.msg is None:
            raise InvalidArgumentError("Empty session data")

        if request.msg == MsgType.SESSION_RESPONSE0:
            response = self._handle_response0(request, _pop_bytes(pop))
        elif request.msg == MsgType.SESSION_RESPONSE1:
            self._handle_response1(request)
            response = None
        else:
            raise InvalidArgumentError(f"invalid security message type {request.msg}")

        if self.state is _State.DONE or response is None:
            return None
        response.sec_ver = request.sec_ver
        return response.encode()

    def _handle_response0(self, request: SessionData, pop: bytes) -> SessionData:
        if self.state is not _State.RESP0:
            _log.warning("Invalid state of session %d", int(self.state))
            raise InvalidStateError("Response0 is not expected now")
        self._verify_response0(request, pop)
        command1 = self._prepare_command1()
        self.state = _State.RESP1
        return command1

    def _verify_response0(self, request: SessionData, pop: bytes) -> None:
        if len(request.device_pubkey) != PUBLIC_KEY_LEN:
            raise EspError("device public key length is not as expected")
        if len(request.device_random) != SZ_RANDOM:
            raise EspError("device random data length is not as expected")
        self.device_pubkey = bytes(request.device_pubkey)
        shared = self.public.shared_secret(self.device_pubkey)
        if pop:
            digest = hashlib.sha256(pop).digest()
            shared = bytes(a ^ b for a, b in zip(shared, digest))
        self.sym_key = shared
        self.rand = bytes(request.device_random)

    def _prepare_command1(self) -> SessionData:
        self._ctr = Cipher(algorithms.AES(self.sym_key), modes.CTR(self.rand)).encryptor()
        verify = self._ctr.update(self.device_pubkey)
        return SessionData(msg=MsgType.SESSION_COMMAND1, client_verify_data=verify)

    def _handle_response1(self, request: SessionData) -> None:
        if self.state is not _State.RESP1:
            _log.error("Invalid state of session %d", int(self.state))
            raise InvalidStateError("Response1 is not expected now")
        data = request.device_verify_data
        if len(data) < PUBLIC_KEY_LEN:
            raise EspError("device verify data is too short")
        check = self._ctr.update(bytes(data[:PUBLIC_KEY_LEN]))
        if not hmac.compare_digest(check, self.public.client_pubkey):
            _log.error("Key mismatch. Close connection")
            raise EspError("key mismatch")
        self.state = _State.DONE
        _log.debug("Secure session established successfully")

    def _crypt(self, session_id: int, data: bytes) -> bytes:
        self._check_id(session_id)
        if self.state is not _State.DONE:
            raise InvalidStateError("secure session not established")
        return self._ctr.update(bytes(data))

    def encrypt(self, session_id: int, data: bytes) -> bytes:
        """Encrypt with the session's AES-CTR stream."""
        return self._crypt(session_id, data)

    def decrypt(self, session_id: int, data: bytes) -> bytes:
        """Decrypt with the session's AES-CTR stream (same as encrypt)."""
        return self._crypt(session_id, data)