"""Tests for TokenVault AES-GCM token encryption."""
import base64

import pytest

from fleetsync.risex.vault import NONCE_LENGTH, TokenVault, decode_key_material


class TestDecodeKeyMaterial:
    def test_hex_32_bytes_used_as_is(self):
        key = bytes(range(32))
        assert decode_key_material(key.hex()) == key

    def test_base64_32_bytes_used_as_is(self):
        key = bytes(range(32, 64))
        assert decode_key_material(base64.b64encode(key).decode()) == key

    def test_other_lengths_hashed_to_32_bytes(self):
        assert len(decode_key_material(base64.b64encode(b"short").decode())) == 32

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            decode_key_material("not a key!!")

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            decode_key_material("   ")


class TestTokenVault:
    def test_round_trip(self, vault):
        assert vault.decrypt(vault.encrypt("access-token-123")) == "access-token-123"

    def test_fresh_nonce_per_encryption(self, vault):
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_ciphertext_carries_nonce(self, vault):
        payload = base64.b64decode(vault.encrypt("x"))
        # nonce + 1 byte plaintext + 16 byte tag
        assert len(payload) == NONCE_LENGTH + 1 + 16

    def test_wrong_key_returns_none(self, vault):
        other = TokenVault(bytes(32))
        assert other.decrypt(vault.encrypt("secret")) is None

    def test_tampered_returns_none(self, vault):
        payload = bytearray(base64.b64decode(vault.encrypt("secret")))
        payload[-1] ^= 0x01
        assert vault.decrypt(base64.b64encode(bytes(payload)).decode()) is None

    def test_truncated_returns_none(self, vault):
        payload = base64.b64decode(vault.encrypt("secret"))
        assert vault.decrypt(base64.b64encode(payload[:NONCE_LENGTH]).decode()) is None

    @pytest.mark.parametrize("value", [None, "", "%%%not-base64%%%", "é"])
    def test_malformed_returns_none(self, vault, value):
        assert vault.decrypt(value) is None

    def test_key_must_be_32_bytes(self):
        with pytest.raises(ValueError):
            TokenVault(b"too short")

    def test_dev_key_is_deterministic(self):
        a = TokenVault.from_setting("")
        b = TokenVault.from_setting("")
        assert b.decrypt(a.encrypt("token")) == "token"

    def test_from_setting_uses_configured_key(self):
        key = bytes(range(32))
        configured = TokenVault.from_setting(key.hex())
        assert TokenVault(key).decrypt(configured.encrypt("token")) == "token"
