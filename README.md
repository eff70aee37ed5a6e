# espnowsec

Security layer for ESP-NOW style peer-to-peer networks, plus a handful of
device utilities that go with it.

The package provides:

- **`espnowsec.security`**: `SecureChannel`, authenticated encryption of
  payloads with 128-bit AES-CCM, keyed from a 32-byte application key
  (16 bytes of key followed by an 8-byte nonce). The tag is appended to the
  ciphertext.
- **`espnowsec.handshake`**: the records used while distributing keys:
  `SecInfo`, `SecPacket`, the `DataType`, `SecType` and `SecVersion`
  enumerations, `SecResponder` scan results and `SecResult` outcomes.
- **`espnowsec.sec1_proto`**: `SessionData`, the encoded messages of the
  "security 1" session setup (`MsgType`, `Status`).
- **`espnowsec.client_security1`**: `PublicSession` and `ClientSession`, the
  client end of the security 1 session: X25519 key exchange, a
  proof-of-possession string mixed into the shared key with SHA-256, and
  AES-256-CTR once the session is established.
- **`espnowsec.server_security1`**: `ServerSession`, the device end of the
  same session.
- **`espnowsec.initiator`**: `Initiator`, which scans for devices and hands an
  application key to a list of them over a `Transport` you supply.
- **`espnowsec.storage`**, **`espnowsec.reboot`**, **`espnowsec.timesync`**,
  **`espnowsec.mem`**, **`espnowsec.utils`**: a small file-backed key/value
  store, restart counting and crash-dump detection, a wall-clock check, an
  allocation recorder, and MAC address helpers with the package's exception
  types.

## Installation

```
pip install espnowsec
```

For running the test suite:

```
pip install "espnowsec[test]"
pytest
```

## Encrypting payloads

```python
import os

from espnowsec.security import SecureChannel

app_key = os.urandom(32)

with SecureChannel() as channel:
    channel.set_key(app_key)
    sealed = channel.encrypt(b"hello peers", 4)
    assert channel.decrypt(sealed, 4) == b"hello peers"
```

Encrypting or decrypting before a key is set raises `InvalidStateError`;
data whose tag does not verify raises `EspError`. Both come from
`espnowsec.utils`, where every exception of the package derives from
`EspError`.

## A security 1 session

The two ends exchange encoded `SessionData` messages. Run entirely in memory:

```python
from espnowsec.client_security1 import ClientSession, PublicSession
from espnowsec.server_security1 import ServerSession

pop = "secret"

public = PublicSession()
client = ClientSession(public)
client.new_session(0)
device = ServerSession(pop)

response0 = device.handle_request(public.command0())
command1 = client.handle_request(0, response0, pop)
response1 = device.handle_request(command1)
assert client.handle_request(0, response1, pop) is None   # session established

assert device.decrypt(client.encrypt(0, b"payload")) == b"payload"
```

A wrong proof of possession makes the verification fail with `EspError`
("key mismatch").

## Distributing a key

The initiator sends frames through any object with a
`send(data_type, dest, data)` method. Frames that arrive must be handed back:
security-status frames to `Initiator.on_status(src_addr, data, rssi, channel)`
and security frames to `Initiator.on_security(src_addr, data)`.

```python
import os

from espnowsec.initiator import Initiator
from espnowsec.utils import mac_str2hex


class RadioLink:
    def send(self, data_type, dest, data):
        ...  # put the frame on the air


own_mac = mac_str2hex("02:00:00:00:00:01")
device_mac = mac_str2hex("02:00:00:00:00:02")

initiator = Initiator(RadioLink(), own_mac)
found = initiator.scan(2.0)          # list of SecResponder

result = initiator.start(os.urandom(32), "secret", [device_mac])
print(result.succeeded_num, result.unfinished_num)
```

`start` runs rounds of at most 100 devices. Each round sends a fresh
Command0 in a `SecPacket` of type `HANDSHAKE` to every device, answers
handshake replies, and finally sends the application key, encrypted with the
session's AES-CTR stream, in a packet of type `KEY`. A device counts as done
when a packet of type `KEY_RESP` arrives from it. `Initiator.stop()` ends a
running distribution early.

## What the package does not do

There is no ready-made device-side counterpart to `Initiator`. On a device
you use `ServerSession` for the session messages, but answering scan requests
with a `SecInfo`, unwrapping and wrapping `SecPacket` frames, decrypting the
`KEY` packet with `ServerSession.decrypt`, replying with `KEY_RESP` and
installing the key in a `SecureChannel` are left to your own code. The package
also contains no radio transport: frames go out and come in only through the
objects you supply.

## Utilities

```python
from espnowsec.utils import mac2str, mac_str2hex

mac = mac_str2hex("02:00:00:00:00:0a")
print(mac2str(mac))            # 02:00:00:00:00:0a
```

```python
from espnowsec.reboot import RebootTracker, ResetReason
from espnowsec.storage import Storage

store = Storage("device-state.json", "espnow")
store.set("greeting", b"hi")
assert store.get("greeting") == b"hi"
store.erase("greeting")

tracker = RebootTracker(store)
tracker.record_boot(ResetReason.POWERON_RESET)
print(tracker.total_count(), tracker.unbroken_count())
```

Keys and namespaces are at most 15 characters; a missing key raises
`NotFoundError`. `reboot.is_exception(path, erase_coredump)` tells whether a
core-dump file starts with a positive dump length, optionally erasing it.

`timesync.timesync_check(now)` tells whether a timestamp lies after
1 January 2020, and `timesync_wait(wait_ms, clock, sleep)` polls a clock,
at most every two seconds, until it does or the wait runs out (then it raises
`EspError`).

`mem.MemoryRecorder` keeps a bounded table of outstanding allocations
(`add_record`, `remove_record`, `records`, `total_size`, `report`), useful
when tracking down leaks in long-running services.