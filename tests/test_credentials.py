import pytest

from dealpilot.publishing.credentials import CredentialDecryptError, CredentialStore


def test_round_trip():
    store = CredentialStore("secret")
    token = store.encrypt("123:abc")
    assert token != "123:abc"
    assert store.decrypt(token) == "123:abc"


def test_wrong_secret_or_tampering_fails():
    token = CredentialStore("secret").encrypt("123:abc")
    with pytest.raises(CredentialDecryptError):
        CredentialStore("other").decrypt(token)
    with pytest.raises(CredentialDecryptError):
        CredentialStore("secret").decrypt(token[:-4] + "AAAA")


def test_secret_from_environment(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_SECRET", "from-env")
    token = CredentialStore().encrypt("value")
    assert CredentialStore("from-env").decrypt(token) == "value"


def test_missing_secret(monkeypatch):
    monkeypatch.delenv("ENCRYPTION_SECRET", raising=False)
    with pytest.raises(ValueError):
        CredentialStore()
