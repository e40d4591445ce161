"""Unit tests for the merchant credential store."""

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from src.errors import ConfigError
from src.openpayments.credentials import CredentialStore
from src.openpayments.signatures import key_fingerprint
from tests.conftest import TEST_KEY_ID, TEST_PRIVATE_KEY


def _pem(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.mark.unit
class TestCredentialStore:
    """Credential resolution, fail-fast checks and the gated override."""

    def test_require_returns_parsed_key(self, test_config):
        credential, key = CredentialStore(test_config).require()
        assert credential.key_id == TEST_KEY_ID
        assert key_fingerprint(key.public_key()) == key_fingerprint(TEST_PRIVATE_KEY.public_key())

    @pytest.mark.parametrize(
        "field", ["wallet_address_url", "key_id", "open_payments_private_key_pem"]
    )
    def test_missing_field_is_config_error(self, test_config, field):
        cfg = test_config.model_copy(update={field: ""})
        store = CredentialStore(cfg)
        assert store.configured is False
        with pytest.raises(ConfigError) as exc_info:
            store.require()
        assert exc_info.value.retryable is False

    def test_non_https_wallet_is_config_error(self, test_config):
        store = CredentialStore(test_config.model_copy(update={"wallet_address_url": "http://wallet.example/m"}))
        with pytest.raises(ConfigError):
            store.require()

    def test_undecodable_b64_key_is_reported_lazily(self, test_config):
        cfg = test_config.model_copy(
            update={"open_payments_private_key_pem": "", "open_payments_private_key_b64": "%%%"}
        )
        store = CredentialStore(cfg)
        with pytest.raises(ConfigError):
            store.require()

    def test_self_test(self, test_config):
        result = CredentialStore(test_config).self_test()
        assert result["ok"] is True
        assert result["keyId"] == TEST_KEY_ID
        assert result["fingerprint"] == key_fingerprint(TEST_PRIVATE_KEY.public_key())

    def test_override_disabled_by_default(self, test_config):
        store = CredentialStore(test_config)
        with pytest.raises(ConfigError):
            store.override(key_id="other")
        assert store.credential.key_id == TEST_KEY_ID

    def test_override_replaces_key(self, test_config):
        store = CredentialStore(test_config.model_copy(update={"allow_runtime_credentials": True}))
        new_key = Ed25519PrivateKey.generate()

        store.override(key_id="rotated", private_key_pem=_pem(new_key))

        credential, key = store.require()
        assert credential.key_id == "rotated"
        assert credential.wallet_address_url == test_config.wallet_address_url
        assert key_fingerprint(key.public_key()) == key_fingerprint(new_key.public_key())

    def test_override_with_bad_key_keeps_previous(self, test_config):
        store = CredentialStore(test_config.model_copy(update={"allow_runtime_credentials": True}))
        with pytest.raises(ConfigError):
            store.override(private_key_pem="not a key")
        assert store.require()[0].key_id == TEST_KEY_ID
