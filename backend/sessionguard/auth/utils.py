from typing import Optional
import logging

from itsdangerous import BadSignature, Signer
from jose import JWTError, jwt
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Auth bootstrap endpoints resolve credentials themselves; validating the
# session cookie there would be circular.
AUTH_BOOTSTRAP_SEGMENTS = (
    "/login",
    "/set-tokens",
    "/clear-tokens",
    "/oauth",
    "/refresh",
    "/verify",
    "/logout",
    "/google",
    "/linkedin",
    "/apple",
)


def is_auth_bootstrap_path(path: str) -> bool:
    if "/auth/" not in path:
        return False
    return any(segment in path for segment in AUTH_BOOTSTRAP_SEGMENTS)


_BROWSERS = (
    # Edge also advertises Chrome and Safari; Chrome also advertises Safari.
    ("Edg", "Edge"),
    ("Chrome", "Chrome"),
    ("Firefox", "Firefox"),
    ("Safari", "Safari"),
)

_PLATFORMS = (
    ("iPhone", "iPhone"),
    ("iPad", "iPad"),
    ("Android", "Android"),
    ("Windows", "Windows"),
    ("Mac OS X", "macOS"),
    ("Macintosh", "macOS"),
    ("Linux", "Linux"),
)


def describe_device(user_agent: Optional[str]) -> str:
    """Human-readable label such as ``Chrome on Windows``."""
    if not user_agent:
        return "Unknown device"
    browser = next((label for token, label in _BROWSERS if token in user_agent), None)
    if browser is None:
        return "Unknown device"
    platform = next((label for token, label in _PLATFORMS if token in user_agent), None)
    return f"{browser} on {platform}" if platform else browser


class SessionCookies:
    """Read and write the signed session cookie."""

    def __init__(
        self,
        secret_key: str,
        *,
        name: str = "access_token",
        refresh_name: str = "refresh_token",
        domain: Optional[str] = None,
        secure: bool = False,
        max_age: int = 3600,
    ) -> None:
        self.name = name
        self.refresh_name = refresh_name
        self.domain = domain or None
        self.secure = secure
        self.max_age = max_age
        self._signer = Signer(secret_key, salt="sessionguard.session-cookie")

    def read_raw(self, request: Request) -> Optional[str]:
        value = request.cookies.get(self.name)
        return value or None

    def sign(self, token: str) -> str:
        return self._signer.sign(token).decode("utf-8")

    def unsign(self, raw: str) -> Optional[str]:
        try:
            return self._signer.unsign(raw).decode("utf-8")
        except BadSignature:
            return None

    def set(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=self.name,
            value=self.sign(token),
            domain=self.domain,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="strict",
            max_age=self.max_age,
        )

    def clear(self, response: Response) -> None:
        for name in (self.name, self.refresh_name):
            response.delete_cookie(
                key=name,
                domain=self.domain,
                path="/",
                secure=self.secure,
                httponly=True,
                samesite="strict",
            )


def decode_legacy_user_id(raw: str, secret_key: str, algorithm: str) -> Optional[int]:
    """Extract the user id from a pre-session JWT cookie.

    Expiry is not enforced: the token only selects a candidate row, which
    must still be active and unexpired.
    """
    try:
        payload = jwt.decode(raw, secret_key, algorithms=[algorithm], options={"verify_exp": False})
    except JWTError:
        return None
    value = payload.get("userId", payload.get("sub"))
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = [
    "AUTH_BOOTSTRAP_SEGMENTS",
    "SessionCookies",
    "decode_legacy_user_id",
    "describe_device",
    "is_auth_bootstrap_path",
]
