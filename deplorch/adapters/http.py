"""
HTTP-based adapters: reachability probe and DNS-over-HTTPS domain checks.
"""

import logging
import ssl
from typing import Optional

import httpx

from deplorch.errors import ProbeError, TransientError
from deplorch.interfaces import DomainRegistrar, Prober
from deplorch.schemas import CertificateState

logger = logging.getLogger(__name__)

DEFAULT_DOH_URL = "https://cloudflare-dns.com/dns-query"

# DNS RR type codes used in DoH JSON answers
RECORD_TYPES = {"A": 1, "CNAME": 5, "TXT": 16}


class HttpxProber(Prober):
    """GETs the endpoint with a per-request timeout, following redirects."""

    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(follow_redirects=True)

    def http_get(self, url: str, timeout: float) -> int:
        try:
            response = self._client.get(url, timeout=timeout)
        except httpx.HTTPError as e:
            raise ProbeError(f"GET {url} failed: {e}") from e
        return response.status_code


def normalize_record(record_type: str, value: str) -> str:
    """
    Normalize a DNS record value for comparison.

    TXT values are unquoted (and multi-string values joined); names lose
    their trailing dot and are lowercased.
    """
    value = value.strip()
    if record_type == "TXT":
        if value.startswith('"'):
            parts = [p for p in value.split('"') if p.strip()]
            value = "".join(parts)
        return value
    return value.rstrip(".").lower()


class DohDomainRegistrar(DomainRegistrar):
    """
    DomainRegistrar backed by a public DNS-over-HTTPS resolver.

    Certificate state is inferred from a verified TLS request to the host:
    a response means ISSUED, a certificate failure means PENDING, and no
    TLS endpoint at all means NONE.
    """

    def __init__(
        self,
        doh_url: str = DEFAULT_DOH_URL,
        client: Optional[httpx.Client] = None,
        tls_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.doh_url = doh_url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
        self._tls_client = tls_client or httpx.Client(timeout=timeout, verify=True)

    def resolve(self, name: str, record_type: str) -> list[str]:
        """Return the normalized values of record_type records at name."""
        if record_type not in RECORD_TYPES:
            raise ValueError(f"Unsupported record type: {record_type}")
        try:
            response = self._client.get(
                self.doh_url,
                params={"name": name, "type": record_type},
                headers={"Accept": "application/dns-json"},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientError(f"DNS lookup of {record_type} {name} failed: {e}") from e

        type_code = RECORD_TYPES[record_type]
        return [
            normalize_record(record_type, answer.get("data", ""))
            for answer in data.get("Answer", []) or []
            if answer.get("type") == type_code
        ]

    def check_record(self, name: str, record_type: str, expected: str) -> bool:
        values = self.resolve(name, record_type)
        found = normalize_record(record_type, expected) in values
        logger.debug(f"{record_type} {name}: {values} (expected {expected}, found={found})")
        return found

    def get_certificate_state(self, domain: str) -> CertificateState:
        try:
            self._tls_client.get(f"https://{domain}/")
        except httpx.ConnectError as e:
            if isinstance(e.__context__, ssl.SSLError) or "certificate" in str(e).lower() or "ssl" in str(e).lower():
                return CertificateState.PENDING
            return CertificateState.NONE
        except httpx.HTTPError as e:
            logger.debug(f"TLS check of {domain} failed: {e}")
            return CertificateState.NONE
        return CertificateState.ISSUED
