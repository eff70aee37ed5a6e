"""Authenticated encryption of frames with a shared application key (AES-CCM)."""

from __future__ import annotations

import enum
import logging
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESCCM

from .utils import EspError, InvalidArgumentError, InvalidStateError

__all__ = [
    "APP_KEY_LEN",
    "KEY_LEN",
    "IV_LEN",
    "TAG_LEN",
    "EVENT_SEC_OK",
    "EVENT_SEC_FAIL",
    "SecState",
    "SecureChannel",
]

APP_KEY_LEN = 32  # exchanged key length
KEY_LEN = 16  # secret key length
IV_LEN = 8  # nonce length
TAG_LEN = 4  # authentication tag length

EVENT_SEC_OK = 0x600
EVENT_SEC_FAIL = 0x601

_log = logging.getLogger("espnow_sec")

BytesLike = Union[bytes, bytearray, memoryview]


class SecState(enum.IntEnum):
    """Progress of the security handshake."""

    UNFINISHED = 0
    OVER = 1


def _as_bytes(data: object, what: str) -> bytes:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InvalidArgumentError(f"{what} must be bytes-like")
    return bytes(data)


class SecureChannel:
    """AES-128-CCM encryption keyed from a 32-byte application key.

    The first 16 bytes of the application key are the AES key and the next
    8 bytes are the nonce. The tag is appended to the ciphertext.
    """

    def __init__(self) -> None:
        self.key_len = KEY_LEN
        self.iv_len = IV_LEN
        self.tag_len = TAG_LEN
        self.key = bytes(KEY_LEN)
        self.iv = bytes(IV_LEN)
        self.state = SecState.UNFINISHED

    def __enter__(self) -> "SecureChannel":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.clear()

    @property
    def ready(self) -> bool:
        """Whether a key has been set."""
        return self.state is SecState.OVER

    def set_key(self, app_key: BytesLike) -> None:
        """Take the AES key and nonce from ``app_key``."""
        app_key = _as_bytes(app_key, "app_key")
        if len(app_key) != APP_KEY_LEN:
            raise InvalidArgumentError(
                f"app_key must be {APP_KEY_LEN} bytes, got {len(app_key)}"
            )
        self.key = app_key[: self.key_len]
        self.iv = app_key[self.key_len : self.key_len + self.iv_len]
        self.state = SecState.OVER

    def _cipher(self, tag_len: int) -> AESCCM:
        if not tag_len:
            raise InvalidArgumentError("tag_len must not be zero")
        try:
            return AESCCM(self.key, tag_length=tag_len)
        except ValueError as exc:
            raise InvalidArgumentError(f"unsupported tag length {tag_len}") from exc

    def _check_ready(self) -> None:
        if self.state is not SecState.OVER:
            _log.error("Security state is not over")
            raise InvalidStateError("security handshake is not finished")

    def encrypt(self, data: BytesLike, tag_len: Optional[int] = None) -> bytes:
        """Encrypt ``data``; returns ciphertext followed by the tag."""
        data = _as_bytes(data, "data")
        tag_len = self.tag_len if tag_len is None else tag_len
        if not data:
            raise InvalidArgumentError("data must not be empty")
        cipher = self._cipher(tag_len)
        self._check_ready()
        try:
            return cipher.encrypt(self.iv, data, None)
        except (ValueError, OverflowError) as exc:
            _log.error("Failed at encrypt_and_tag: %s", exc)
            raise EspError(f"encryption failed: {exc}") from exc

    def decrypt(self, data: BytesLike, tag_len: Optional[int] = None) -> bytes:
        """Verify the trailing tag of ``data`` and return the plaintext."""
        data = _as_bytes(data, "data")
        tag_len = self.tag_len if tag_len is None else tag_len
        if not data:
            raise InvalidArgumentError("data must not be empty")
        if not tag_len:
            raise InvalidArgumentError("tag_len must not be zero")
        if len(data) <= tag_len:
            raise InvalidArgumentError(
                f"data of {len(data)} bytes is not longer than the {tag_len}-byte tag"
            )
        cipher = self._cipher(tag_len)
        self._check_ready()
        try:
            return cipher.decrypt(self.iv, data, None)
        except InvalidTag as exc:
            _log.error("Failed at auth_decrypt: authentication failed")
            raise EspError("authentication failed") from exc
        except (ValueError, OverflowError) as exc:
            _log.error("Failed at auth_decrypt: %s", exc)
            raise EspError(f"decryption failed: {exc}") from exc

    def clear(self) -> None:
        """Forget the key and return to the unkeyed state."""
        self.key = bytes(KEY_LEN)
        self.iv = bytes(IV_LEN)
        self.key_len = KEY_LEN
        self.iv_len = IV_LEN
        self.tag_len = TAG_LEN
        self.state = SecState.UNFINISHED