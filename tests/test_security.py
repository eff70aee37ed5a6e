import pytest

from espnowsec.security import (
    APP_KEY_LEN,
    IV_LEN,
    KEY_LEN,
    TAG_LEN,
    SecState,
    SecureChannel,
)
from espnowsec.utils import EspError, InvalidArgumentError, InvalidStateError

APP_KEY = bytes(range(APP_KEY_LEN))
OTHER_KEY = bytes(range(100, 100 + APP_KEY_LEN))


@pytest.fixture
def channel():
    chan = SecureChannel()
    chan.set_key(APP_KEY)
    return chan


def test_set_key_splits_key_and_nonce(channel):
    assert channel.key == APP_KEY[:KEY_LEN]
    assert channel.iv == APP_KEY[KEY_LEN : KEY_LEN + IV_LEN]
    assert channel.state is SecState.OVER


def test_new_channel_is_unfinished():
    chan = SecureChannel()
    assert chan.state is SecState.UNFINISHED
    assert chan.ready is False


def test_round_trip(channel):
    message = b"hello over the air"
    sealed = channel.encrypt(message)
    assert len(sealed) == len(message) + TAG_LEN
    assert sealed[: len(message)] != message
    assert channel.decrypt(sealed) == message


@pytest.mark.parametrize("tag_len", [4, 8, 16])
def test_round_trip_with_tag_lengths(channel, tag_len):
    message = b"payload"
    sealed = channel.encrypt(message, tag_len)
    assert len(sealed) == len(message) + tag_len
    assert channel.decrypt(sealed, tag_len) == message


def test_encryption_is_deterministic_for_one_key(channel):
    sealed = channel.encrypt(b"abc")
    assert len(sealed) == 3 + TAG_LEN
    again = channel.encrypt(b"abc")
    assert again == sealed
    assert channel.decrypt(again) == b"abc"


def test_other_channel_with_same_key_decrypts(channel):
    peer = SecureChannel()
    peer.set_key(APP_KEY)
    assert peer.decrypt(channel.encrypt(b"shared")) == b"shared"


def test_wrong_key_fails_authentication(channel):
    peer = SecureChannel()
    peer.set_key(OTHER_KEY)
    with pytest.raises(EspError):
        peer.decrypt(channel.encrypt(b"shared"))


def test_tampered_data_fails(channel):
    sealed = bytearray(channel.encrypt(b"integrity"))
    sealed[0] ^= 0x01
    with pytest.raises(EspError):
        channel.decrypt(bytes(sealed))


def test_encrypt_without_key_is_rejected():
    with pytest.raises(InvalidStateError):
        SecureChannel().encrypt(b"data")


def test_decrypt_without_key_is_rejected():
    with pytest.raises(InvalidStateError):
        SecureChannel().decrypt(b"0123456789")


@pytest.mark.parametrize("key", [b"", bytes(16), bytes(33)])
def test_set_key_needs_exact_length(key):
    with pytest.raises(InvalidArgumentError):
        SecureChannel().set_key(key)


def test_empty_input_is_rejected(channel):
    with pytest.raises(InvalidArgumentError):
        channel.encrypt(b"")
    with pytest.raises(InvalidArgumentError):
        channel.decrypt(b"")


def test_zero_tag_length_is_rejected(channel):
    with pytest.raises(InvalidArgumentError):
        channel.encrypt(b"data", 0)


def test_decrypt_needs_more_than_the_tag(channel):
    with pytest.raises(InvalidArgumentError):
        channel.decrypt(bytes(TAG_LEN), TAG_LEN)


def test_clear_forgets_key(channel):
    channel.clear()
    assert channel.state is SecState.UNFINISHED
    assert channel.key == bytes(KEY_LEN)
    with pytest.raises(InvalidStateError):
        channel.encrypt(b"data")


def test_context_manager_clears_on_exit():
    with SecureChannel() as chan:
        chan.set_key(APP_KEY)
        sealed = chan.encrypt(b"inside")
    assert chan.ready is False
    assert len(sealed) == len(b"inside") + TAG_LEN