"""
DomainVerifier - custom-domain DNS and certificate checks.

Same retry shape as the build and deploy checks: up to `attempts` rounds
with a fixed backoff. Each round checks the ownership TXT record, the
connection record (CNAME, or A for apex hosts) and certificate readiness.

Unlike build and deploy, running out of rounds is not fatal: the binding
stays PENDING and DomainPendingError carries it back to the caller. There
is no expiry and no cap across separate invocations.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from deplorch.errors import DomainPendingError
from deplorch.interfaces import DomainRegistrar
from deplorch.polling import CancellationToken, Sleeper, wait
from deplorch.schemas import CertificateState, DomainBinding

logger = logging.getLogger(__name__)

DEFAULT_VERIFICATION_PREFIX = "_deplorch-challenge"


def ownership_record_name(hostname: str, prefix: str = DEFAULT_VERIFICATION_PREFIX) -> str:
    """Name of the TXT record that proves ownership of hostname."""
    return f"{prefix}.{hostname}"


class DomainVerifier:
    """Checks DNS records and certificate state for a DomainBinding."""

    def __init__(
        self,
        registrar: DomainRegistrar,
        attempts: int = 3,
        backoff: float = 30.0,
        verification_prefix: str = DEFAULT_VERIFICATION_PREFIX,
        sleep: Optional[Sleeper] = None,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.registrar = registrar
        self.attempts = attempts
        self.backoff = backoff
        self.verification_prefix = verification_prefix
        self._sleep = sleep

    def check_once(self, binding: DomainBinding) -> DomainBinding:
        """Run one round of checks and return the updated binding."""
        ownership = self.registrar.check_record(
            ownership_record_name(binding.hostname, self.verification_prefix),
            "TXT",
            binding.verification_token,
        )
        connection = self.registrar.check_record(
            binding.hostname,
            binding.connection_record_type,
            binding.connection_target,
        )
        # Certificates are only issued once the connection record points at us
        certificate = (
            self.registrar.get_certificate_state(binding.hostname)
            if connection
            else CertificateState.NONE
        )
        return binding.with_checks(ownership, connection, certificate, datetime.now(timezone.utc))

    def verify(
        self,
        binding: DomainBinding,
        cancel: Optional[CancellationToken] = None,
    ) -> DomainBinding:
        """
        Verify a binding, retrying up to `attempts` rounds.

        Returns:
            The ACTIVE binding

        Raises:
            DomainPendingError: Checks still failing after the last round;
                carries the PENDING binding
            SessionCancelledError: Cancelled at a poll boundary
        """
        if binding.active:
            return binding

        for attempt in range(1, self.attempts + 1):
            if cancel is not None:
                cancel.check("domain check")
            binding = self.check_once(binding)
            if binding.active:
                logger.info(
                    f"Domain {binding.hostname} active",
                    extra={"stage": "domain", "event": "domain_active", "metadata": {"hostname": binding.hostname}},
                )
                return binding
            logger.info(
                f"Domain {binding.hostname} round {attempt}/{self.attempts}: "
                f"failing {', '.join(binding.failed_checks())}",
                extra={
                    "stage": "domain",
                    "event": "domain_pending",
                    "metadata": {"hostname": binding.hostname, "failed_checks": binding.failed_checks()},
                },
            )
            if attempt < self.attempts:
                wait(self.backoff, cancel, self._sleep, "domain backoff")

        raise DomainPendingError(binding, binding.failed_checks())
