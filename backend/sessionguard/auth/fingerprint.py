"""Device fingerprints for session binding.

A fingerprint is an HMAC-SHA256 over a fixed, ordered tuple of request
attributes joined with ``|``. Missing values hash as empty strings so the
output only depends on what the client actually sent. Rotating the secret
invalidates every stored fingerprint.
"""

from dataclasses import dataclass
import hashlib
import hmac

from starlette.requests import Request


@dataclass(frozen=True)
class RequestMetadata:
    user_agent: str = ""
    accept_language: str = ""
    accept_encoding: str = ""
    accept: str = ""
    remote_ip: str = ""
    forwarded_for: str = ""

    @classmethod
    def from_request(cls, request: Request) -> "RequestMetadata":
        headers = request.headers
        return cls(
            user_agent=headers.get("user-agent", ""),
            accept_language=headers.get("accept-language", ""),
            accept_encoding=headers.get("accept-encoding", ""),
            accept=headers.get("accept", ""),
            remote_ip=request.client.host if request.client else "",
            forwarded_for=headers.get("x-forwarded-for", ""),
        )

    def components(self) -> tuple[str, ...]:
        # Order is part of the hash input; do not reorder.
        return (
            self.user_agent or "",
            self.accept_language or "",
            self.accept_encoding or "",
            self.accept or "",
            self.remote_ip or "",
            self.forwarded_for or "",
        )

    @property
    def client_ip(self) -> str:
        """Best-effort originating address (first X-Forwarded-For hop)."""
        if self.forwarded_for:
            first = self.forwarded_for.split(",")[0].strip()
            if first:
                return first
        return self.remote_ip or "unknown"


class FingerprintGenerator:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Fingerprint secret must not be empty")
        self._key = secret.encode("utf-8")

    def generate(self, metadata: RequestMetadata) -> str:
        payload = "|".join(metadata.components()).encode("utf-8")
        return hmac.new(self._key, payload, hashlib.sha256).hexdigest()

    def matches(self, stored: str, metadata: RequestMetadata) -> bool:
        return hmac.compare_digest(stored, self.generate(metadata))
