"""Tests for client configuration and key loading."""

import base64

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from openpay.config import (
    DEFAULT_BASE_URL,
    DEFAULT_TIMEOUT_SECONDS,
    load_config,
    parse_private_key,
)


KEY = ed25519.Ed25519PrivateKey.generate()
PEM = KEY.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.PKCS8,
    serialization.NoEncryption(),
).decode()
RAW = KEY.private_bytes(
    serialization.Encoding.Raw,
    serialization.PrivateFormat.Raw,
    serialization.NoEncryption(),
)


def public_bytes(key):
    return key.public_key().public_bytes_raw()


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "OPENPAY_WALLET_ADDRESS_URL", "OPENPAY_KEY_ID", "OPENPAY_PRIVATE_KEY",
        "OPENPAY_PRIVATE_KEY_PATH", "OPENPAY_BASE_URL", "OPENPAY_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadConfig:
    def test_from_environment(self, clean_env):
        clean_env.setenv("OPENPAY_WALLET_ADDRESS_URL", "https://wallet.example/client")
        clean_env.setenv("OPENPAY_KEY_ID", "k1")
        clean_env.setenv("OPENPAY_PRIVATE_KEY", PEM)
        clean_env.setenv("OPENPAY_TIMEOUT_SECONDS", "5")

        config = load_config()

        assert config.key_id == "k1"
        assert config.base_url == DEFAULT_BASE_URL
        assert config.timeout_seconds == 5.0
        assert PEM not in repr(config)

    def test_keywords_override_environment(self, clean_env):
        clean_env.setenv("OPENPAY_KEY_ID", "from-env")
        config = load_config(
            wallet_address_url="https://w.example/c",
            key_id="from-arg",
            private_key=PEM,
            base_url="https://app.example/",
        )
        assert config.key_id == "from-arg"
        assert config.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
        assert config.finish_uri("payment", "p1") == "https://app.example/payment/callback/p1"

    def test_key_from_path(self, clean_env, tmp_path):
        key_file = tmp_path / "key.pem"
        key_file.write_text(PEM)
        config = load_config(wallet_address_url="w", key_id="k", private_key_path=str(key_file))
        assert public_bytes(config.load_private_key()) == public_bytes(KEY)

    def test_missing_settings_listed(self, clean_env):
        with pytest.raises(ValueError) as exc:
            load_config(key_id="k")
        message = str(exc.value)
        assert "OPENPAY_WALLET_ADDRESS_URL" in message
        assert "OPENPAY_PRIVATE_KEY" in message
        assert "OPENPAY_KEY_ID" not in message


class TestParsePrivateKey:
    def test_pem(self):
        assert public_bytes(parse_private_key(PEM)) == public_bytes(KEY)

    def test_escaped_newlines(self):
        assert public_bytes(parse_private_key(PEM.replace("\n", "\\n"))) == public_bytes(KEY)

    def test_base64_raw(self):
        assert public_bytes(parse_private_key(base64.b64encode(RAW).decode())) == public_bytes(KEY)

    def test_pem_file_path(self, tmp_path):
        path = tmp_path / "k.pem"
        path.write_text(PEM)
        assert public_bytes(parse_private_key(str(path))) == public_bytes(KEY)

    def test_rejects_other_key_types(self):
        other = ec.generate_private_key(ec.SECP256R1()).private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        with pytest.raises(ValueError, match="Ed25519"):
            parse_private_key(other)

    def test_garbage(self):
        with pytest.raises(ValueError):
            parse_private_key("not a key")
