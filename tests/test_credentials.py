from __future__ import annotations

import pytest

from gantry.credentials import MASK, EnvSecretStore, MappingSecretStore, Redactor, SecretBroker
from gantry.errors import CredentialMissing


class TestStores:
    def test_env_store_uses_prefix(self):
        store = EnvSecretStore(environ={"GANTRY_SECRET_FLY_API_TOKEN": "t0k3n", "FLY_API_TOKEN": "wrong"})
        assert store.get("FLY_API_TOKEN") == "t0k3n"
        assert store.get("OTHER") is None

    def test_custom_prefix(self):
        assert EnvSecretStore(prefix="CI_", environ={"CI_X": "1"}).get("X") == "1"

    def test_env_store_scrubs_its_own_keys(self):
        store = EnvSecretStore(environ={})
        environ = {"PATH": "/bin", "GANTRY_SECRET_FLY_API_TOKEN": "t0k3n"}
        assert store.scrub(environ) == {"PATH": "/bin"}
        assert "GANTRY_SECRET_FLY_API_TOKEN" in environ

    def test_mapping_store_scrubs_nothing(self):
        assert MappingSecretStore({"X": "1"}).scrub({"PATH": "/bin"}) == {"PATH": "/bin"}


class TestSecretBroker:
    def test_resolve_registers_value_for_redaction(self):
        broker = SecretBroker(MappingSecretStore({"TOKEN": "hunter2"}))
        secret = broker.resolve("TOKEN", scope="step")
        assert secret.value == "hunter2"
        assert secret.scope == "step"
        assert broker.redactor.redact("password is hunter2") == f"password is {MASK}"

    @pytest.mark.parametrize("values", [{}, {"TOKEN": ""}])
    def test_missing_or_empty_secret(self, values):
        broker = SecretBroker(MappingSecretStore(values))
        with pytest.raises(CredentialMissing) as exc:
            broker.resolve("TOKEN", scope="job")
        assert exc.value.secret == "TOKEN"
        assert "TOKEN" in str(exc.value)

    def test_secret_never_prints_its_value(self):
        secret = SecretBroker(MappingSecretStore({"TOKEN": "hunter2"})).resolve("TOKEN")
        assert str(secret) == MASK
        assert "hunter2" not in repr(secret)


class TestRedactor:
    def test_longest_value_masked_first(self):
        r = Redactor()
        r.add("abc")
        r.add("abcdef")
        assert r.redact("x abcdef y abc") == f"x {MASK} y {MASK}"

    def test_empty_values_are_ignored(self):
        r = Redactor()
        r.add("")
        assert r.redact("text") == "text"
        assert r.redact(None) == ""
