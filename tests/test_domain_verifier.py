"""Tests for DomainVerifier."""

import pytest

from deplorch.domain_verifier import DomainVerifier, ownership_record_name
from deplorch.errors import DomainPendingError
from deplorch.schemas import CertificateState, DomainStatus

from fakes import FakeClock, FakeRegistrar, make_binding


def publish_all(registrar, binding, prefix="_deplorch-challenge"):
    registrar.publish(ownership_record_name(binding.hostname, prefix), "TXT", binding.verification_token)
    registrar.publish(binding.hostname, binding.connection_record_type, binding.connection_target)


class TestOwnershipRecordName:
    def test_prefixed(self):
        assert ownership_record_name("shop.example.com", "_verify") == "_verify.shop.example.com"


class TestCheckOnce:
    """Tests for a single round of checks."""

    def test_all_pass(self):
        registrar = FakeRegistrar(certificate=CertificateState.ISSUED)
        binding = make_binding()
        publish_all(registrar, binding)

        checked = DomainVerifier(registrar).check_once(binding)

        assert checked.active
        assert checked.checks == 1
        assert checked.last_checked_at is not None

    def test_certificate_not_checked_without_connection(self):
        """Certificates are only looked at once the connection record resolves."""
        registrar = FakeRegistrar(certificate=CertificateState.ISSUED)
        binding = make_binding()
        registrar.publish(ownership_record_name(binding.hostname), "TXT", binding.verification_token)

        checked = DomainVerifier(registrar).check_once(binding)

        assert checked.failed_checks() == ["connection_record", "certificate"]
        assert registrar.certificate_checks == 0

    def test_apex_uses_a_record(self):
        registrar = FakeRegistrar(certificate=CertificateState.ISSUED)
        binding = make_binding(hostname="example.com", connection_record_type="A", connection_target="203.0.113.7")
        publish_all(registrar, binding)

        assert DomainVerifier(registrar).check_once(binding).active
        assert ("example.com", "A") in registrar.lookups


class TestVerify:
    """Tests for bounded verification rounds."""

    def test_pending_after_attempts(self):
        """Missing ownership record: three rounds, then DomainPendingError."""
        clock = FakeClock()
        registrar = FakeRegistrar(certificate=CertificateState.PENDING)
        binding = make_binding()
        registrar.publish(binding.hostname, "CNAME", binding.connection_target)

        with pytest.raises(DomainPendingError) as excinfo:
            DomainVerifier(registrar, attempts=3, backoff=30, sleep=clock.sleep).verify(binding)

        pending = excinfo.value.binding
        assert pending.status == DomainStatus.PENDING
        assert pending.checks == 3
        assert excinfo.value.failed_checks == ["ownership_record", "certificate"]
        assert clock.sleeps == [30, 30]

    def test_becomes_active_mid_way(self):
        clock = FakeClock()
        registrar = FakeRegistrar(certificate=CertificateState.ISSUED)
        binding = make_binding()

        def publish_on_sleep(seconds):
            clock.sleep(seconds)
            publish_all(registrar, binding)

        verified = DomainVerifier(registrar, sleep=publish_on_sleep).verify(binding)
        assert verified.active
        assert verified.checks == 2

    def test_active_binding_not_rechecked(self):
        registrar = FakeRegistrar(certificate=CertificateState.ISSUED)
        binding = make_binding()
        publish_all(registrar, binding)
        verifier = DomainVerifier(registrar)
        active = verifier.check_once(binding)
        registrar.lookups.clear()

        assert verifier.verify(active) is active
        assert registrar.lookups == []

    def test_custom_prefix(self):
        registrar = FakeRegistrar(certificate=CertificateState.ISSUED)
        binding = make_binding()
        publish_all(registrar, binding, prefix="_acme-owner")
        assert DomainVerifier(registrar, verification_prefix="_acme-owner").check_once(binding).active
