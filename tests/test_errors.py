"""
Tests for the error code system: KeyLedgerError and registry.yaml.
"""

import pytest

from keyledger.core.errors import (
    AuthenticationFailure,
    KeyLedgerError,
    MalformedEvent,
    ProviderCallFailure,
    StoreFailure,
    UnknownJob,
    UnresolvedIdentity,
)
from keyledger.core.errors.registry import ErrorRegistry, RegistryValidationError, error_registry


class TestKeyLedgerError:
    def test_default_codes(self):
        assert AuthenticationFailure().code == "KL-SEC-001"
        assert UnresolvedIdentity().code == "KL-RCN-001"
        assert MalformedEvent().code == "KL-RCN-002"
        assert ProviderCallFailure().code == "KL-PAY-001"
        assert StoreFailure().code == "KL-DB-001"
        assert UnknownJob().code == "KL-JOB-001"

    def test_explicit_code_overrides_default(self):
        assert ProviderCallFailure("KL-PAY-002").code == "KL-PAY-002"

    def test_detail_and_context(self):
        exc = StoreFailure(detail="locked", context={"operation": "upsert"})

        assert str(exc) == "KL-DB-001: locked"
        assert exc.context == {"operation": "upsert"}

    def test_invalid_code_rejected(self):
        with pytest.raises(ValueError):
            KeyLedgerError("PAY-1")

    def test_base_class_needs_a_code(self):
        with pytest.raises(ValueError):
            KeyLedgerError()


class TestRegistry:
    def test_every_default_code_is_registered(self):
        for cls in (AuthenticationFailure, UnresolvedIdentity, MalformedEvent, ProviderCallFailure, StoreFailure, UnknownJob):
            assert error_registry.get(cls.default_code) is not None, cls.__name__

    def test_http_statuses(self):
        assert error_registry.get("KL-SEC-001").http_status == 400
        assert error_registry.get("KL-SEC-002").http_status == 401
        assert error_registry.get("KL-PAY-001").http_status == 502
        assert error_registry.get("KL-DB-001").http_status == 503
        assert error_registry.get("KL-DB-001").retryable is True

    def test_unknown_code(self):
        assert error_registry.get("KL-SYS-999") is None

    def test_domain_mismatch_rejected(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text(
            "schema_version: 1\n"
            "errors:\n"
            "  - code: KL-PAY-001\n"
            "    domain: DB\n"
            "    title: x\n"
            "    severity: ERROR\n"
            "    retryable: false\n"
            "    http_status: 500\n"
            "    safe_message: x\n"
            "    remediation: []\n"
        )

        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))

    def test_duplicate_code_rejected(self, tmp_path):
        entry = (
            "  - code: KL-SYS-001\n"
            "    domain: SYS\n"
            "    title: x\n"
            "    severity: ERROR\n"
            "    retryable: false\n"
            "    http_status: 500\n"
            "    safe_message: x\n"
            "    remediation: []\n"
        )
        path = tmp_path / "registry.yaml"
        path.write_text("schema_version: 1\nerrors:\n" + entry + entry)

        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))
