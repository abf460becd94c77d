"""
DomainBinding schema - optional custom-domain verification state.

A binding is created when a custom domain is requested and resolves to
ACTIVE, or stays PENDING indefinitely until re-verified on request. It
never expires.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class DomainStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class CertificateState(str, Enum):
    """Certificate issuance state for a hostname."""
    NONE = "none"
    PENDING = "pending"
    ISSUED = "issued"
    FAILED = "failed"


@dataclass(frozen=True)
class DomainBinding:
    """
    A requested custom hostname and the results of its last checks.

    Attributes:
        hostname: Requested custom hostname
        verification_token: Value expected in the ownership TXT record
        connection_target: Value expected in the connection record
        connection_record_type: "CNAME" for subdomains, "A" for apex hosts
        ownership_verified: Result of the last ownership record check
        connection_verified: Result of the last connection record check
        certificate_state: Last observed certificate state
        status: PENDING until every check passes once
        checks: Number of verification rounds performed so far
        last_checked_at: When the binding was last checked
    """
    hostname: str
    verification_token: str
    connection_target: str
    connection_record_type: str = "CNAME"
    ownership_verified: bool = False
    connection_verified: bool = False
    certificate_state: CertificateState = CertificateState.NONE
    status: DomainStatus = DomainStatus.PENDING
    checks: int = 0
    last_checked_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "hostname", self.hostname.strip().rstrip(".").lower())
        if not self.hostname:
            raise ValueError("hostname is required")
        if self.connection_record_type not in ("CNAME", "A"):
            raise ValueError(f"Unsupported connection record type: {self.connection_record_type}")

    @property
    def active(self) -> bool:
        return self.status == DomainStatus.ACTIVE

    def failed_checks(self) -> list[str]:
        """Names of the checks that did not pass in the last round."""
        failed = []
        if not self.ownership_verified:
            failed.append("ownership_record")
        if not self.connection_verified:
            failed.append("connection_record")
        if self.certificate_state != CertificateState.ISSUED:
            failed.append("certificate")
        return failed

    def with_checks(
        self,
        ownership_verified: bool,
        connection_verified: bool,
        certificate_state: CertificateState,
        checked_at: datetime,
    ) -> "DomainBinding":
        """Return a copy updated with one round of check results."""
        updated = replace(
            self,
            ownership_verified=ownership_verified,
            connection_verified=connection_verified,
            certificate_state=certificate_state,
            checks=self.checks + 1,
            last_checked_at=checked_at,
        )
        status = DomainStatus.ACTIVE if not updated.failed_checks() else DomainStatus.PENDING
        return replace(updated, status=status)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "hostname": self.hostname,
            "verification_token": self.verification_token,
            "connection_target": self.connection_target,
            "connection_record_type": self.connection_record_type,
            "ownership_verified": self.ownership_verified,
            "connection_verified": self.connection_verified,
            "certificate_state": self.certificate_state.value,
            "status": self.status.value,
            "checks": self.checks,
        }
        if self.last_checked_at is not None:
            result["last_checked_at"] = self.last_checked_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DomainBinding":
        return cls(
            hostname=data["hostname"],
            verification_token=data["verification_token"],
            connection_target=data["connection_target"],
            connection_record_type=data.get("connection_record_type", "CNAME"),
            ownership_verified=data.get("ownership_verified", False),
            connection_verified=data.get("connection_verified", False),
            certificate_state=CertificateState(data.get("certificate_state", "none")),
            status=DomainStatus(data.get("status", "pending")),
            checks=data.get("checks", 0),
            last_checked_at=datetime.fromisoformat(data["last_checked_at"]) if data.get("last_checked_at") else None,
        )
