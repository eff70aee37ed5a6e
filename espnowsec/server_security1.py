"""Device side of the security-1 session: X25519 key exchange and AES-256-CTR."""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import os
from typing import Optional, Union

from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .client_security1 import PUBLIC_KEY_LEN, SZ_RANDOM
from .sec1_proto import SEC_VER, MsgType, SessionData, Status
from .utils import EspError, InvalidArgumentError, InvalidStateError

__all__ = ["ServerSession"]

_log = logging.getLogger("security1")

Pop = Union[str, bytes, bytearray, memoryview, None]


class _State(enum.IntEnum):
    CMD0 = 0
    CMD1 = 1
    DONE = 2


def _pop_bytes(pop: Pop) -> bytes:
    if pop is None:
        return b""
    if isinstance(pop, str):
        return pop.encode("utf-8")
    if isinstance(pop, (bytes, bytearray, memoryview)):
        return bytes(pop)
    raise InvalidArgumentError("pop must be str, bytes or None")


class ServerSession:
    """The device end of one security-1 session, answering a client's commands.

    Both directions share one AES-CTR key stream: the client's verifier, the
    device's verifier and then the application data, in that order.
    """

    def __init__(self, pop: Pop = None) -> None:
        self.pop = _pop_bytes(pop)
        self.state = _State.CMD0
        self.client_pubkey = bytes(PUBLIC_KEY_LEN)
        self.device_pubkey = bytes(PUBLIC_KEY_LEN)
        self.sym_key = bytes(PUBLIC_KEY_LEN)
        self.rand = bytes(SZ_RANDOM)
        self._ctr = None

    @property
    def established(self) -> bool:
        return self.state is _State.DONE

    def handle_request(self, data: bytes) -> bytes:
        """Process a client command and return the encoded response."""
        request = SessionData.decode(data)
        if request.sec_ver != SEC_VER:
            _log.error("Security version mismatch. Closing connection")
            raise InvalidArgumentError(
                f"security version {request.sec_ver} is not supported"
            )
        if request.msg is None:
            raise InvalidArgumentError("Empty session data")

        if request.msg == MsgType.SESSION_COMMAND0:
            response = self._handle_command0(request)
        elif request.msg == MsgType.SESSION_COMMAND1:
            response = self._handle_command1(request)
        else:
            raise InvalidArgumentError(f"invalid security message type {request.msg}")
        response.sec_ver = request.sec_ver
        return response.encode()

    def _handle_command0(self, request: SessionData) -> SessionData:
        if self.state is not _State.CMD0:
            _log.error("Invalid state of session %d", int(self.state))
            raise InvalidStateError("Command0 is not expected now")
        client_pubkey = bytes(request.client_pubkey)
        if len(client_pubkey) != PUBLIC_KEY_LEN:
            raise InvalidArgumentError("client public key length is not as expected")

        private_key = X25519PrivateKey.generate()
        device_pubkey = private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )
        try:
            shared = private_key.exchange(X25519PublicKey.from_public_bytes(client_pubkey))
        except ValueError as exc:
            _log.error("Failed to compute the shared key: %s", exc)
            raise EspError(f"key exchange failed: {exc}") from exc
        if self.pop:
            digest = hashlib.sha256(self.pop).digest()
            shared = bytes(a ^ b for a, b in zip(shared, digest))

        self.client_pubkey = client_pubkey
        self.device_pubkey = device_pubkey
        self.sym_key = shared
        self.rand = os.urandom(SZ_RANDOM)
        self._ctr = Cipher(
            algorithms.AES(self.sym_key), modes.CTR(self.rand)
        ).encryptor()
        self.state = _State.CMD1
        return SessionData(
            msg=MsgType.SESSION_RESPONSE0,
            status=Status.SUCCESS,
            device_pubkey=self.device_pubkey,
            device_random=self.rand,
        )

    def _handle_command1(self, request: SessionData) -> SessionData:
        if self.state is not _State.CMD1:
            _log.error("Invalid state of session %d", int(self.state))
            raise InvalidStateError("Command1 is not expected now")
        verify = bytes(request.client_verify_data)
        if len(verify) != PUBLIC_KEY_LEN:
            raise InvalidArgumentError("client verify data length is not as expected")
        check = self._ctr.update(verify)
        if not hmac.compare_digest(check, self.device_pubkey):
            _log.error("Key mismatch. Close connection")
            raise EspError("key mismatch")
        device_verify = self._ctr.update(self.client_pubkey)
        self.state = _State.DONE
        _log.debug("Secure session established successfully")
        return SessionData(
            msg=MsgType.SESSION_RESPONSE1,
            status=Status.SUCCESS,
            device_verify_data=device_verify,
        )

    def _crypt(self, data: bytes) -> bytes:
        if self.state is not _State.DONE:
            _log.error("Secure session not established")
            raise InvalidStateError("secure session not established")
        return self._ctr.update(bytes(data))

    def decrypt(self, data: bytes) -> bytes:
        """Decrypt with the session's AES-CTR stream."""
        return self._crypt(data)

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt with the session's AES-CTR stream (same as decrypt)."""
        return self._crypt(data)