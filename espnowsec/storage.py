"""A small persistent key-value store with namespaces, kept in one file."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union

from .utils import InvalidArgumentError, NotFoundError

__all__ = ["Storage", "KEY_MAX_LEN", "DEFAULT_NAMESPACE"]

KEY_MAX_LEN = 15
DEFAULT_NAMESPACE = "espnow"

_log = logging.getLogger("espnow_storage")

BytesLike = Union[bytes, bytearray, memoryview]


def _check_name(name: object, what: str) -> str:
    if not isinstance(name, str) or not name:
        raise InvalidArgumentError(f"{what} must be a non-empty string")
    if len(name) > KEY_MAX_LEN:
        raise InvalidArgumentError(
            f"{what} {name!r} is longer than {KEY_MAX_LEN} characters"
        )
    return name


class Storage:
    """Binary values stored by key within one namespace of a backing file.

    Several Storage objects may share a file as long as they use different
    namespaces; each operation reads and rewrites the file as a whole.
    """

    def __init__(
        self, path: Union[str, os.PathLike], namespace: str = DEFAULT_NAMESPACE
    ) -> None:
        self.path = Path(path)
        self.namespace = _check_name(namespace, "namespace")
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict[str, str]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            _log.error("Storage file %s is damaged, starting afresh", self.path)
            return {}
        if not isinstance(data, dict):
            _log.error("Storage file %s is damaged, starting afresh", self.path)
            return {}
        return data

    def _save(self, data: dict[str, dict[str, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".storage-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def set(self, key: str, value: BytesLike) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        _check_name(key, "key")
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise InvalidArgumentError("value must be bytes-like")
        blob = bytes(value)
        if not blob:
            raise InvalidArgumentError("value must not be empty")
        with self._lock:
            data = self._load()
            data.setdefault(self.namespace, {})[key] = blob.hex()
            self._save(data)

    def get(self, key: str, length: int = 0) -> bytes:
        """Load the value stored under ``key``.

        ``length`` of 0 reads the whole value; otherwise it is the size of the
        caller's buffer and must be no less than the stored value.
        """
        _check_name(key, "key")
        if length < 0:
            raise InvalidArgumentError("length must not be negative")
        with self._lock:
            stored = self._load().get(self.namespace, {}).get(key)
        if stored is None:
            _log.debug("<ESP_ERR_NVS_NOT_FOUND> Get value for given key, key: %s", key)
            raise NotFoundError(key)
        blob = bytes.fromhex(stored)
        if length and length < len(blob):
            raise InvalidArgumentError(
                f"value of {key!r} is {len(blob)} bytes, buffer is {length}"
            )
        return blob

    def erase(self, key: Optional[str] = None) -> None:
        """Erase ``key``, or the whole namespace when ``key`` is None.

        Erasing a key that does not exist is not an error.
        """
        if key is not None:
            _check_name(key, "key")
        with self._lock:
            data = self._load()
            entries = data.get(self.namespace)
            if entries is None:
                return
            if key is None:
                del data[self.namespace]
            elif key in entries:
                del entries[key]
            else:
                return
            self._save(data)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        with self._lock:
            return key in self._load().get(self.namespace, {})