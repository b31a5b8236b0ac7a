import threading
import time
from typing import Optional

from msal import ConfidentialClientApplication

from permissions_exporter.runtime_logger import emit


GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]
TOKEN_REFRESH_MARGIN_SECONDS = 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 55 * 60


class TokenProvider:
    """Client-credentials token source for Microsoft Graph."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str):
        self._tenant_id = tenant_id or ""
        self._client_id = client_id or ""
        self._client_secret = client_secret or ""
        self._cca: Optional[ConfidentialClientApplication] = None
        self._token_lock = threading.Lock()
        self._cached_token: Optional[str] = None
        self._cached_token_expires_at: float = 0.0

    def validate_credentials(self) -> bool:
        for label, value in (
            ("TenantId", self._tenant_id),
            ("ClientId", self._client_id),
            ("ClientSecret", self._client_secret),
        ):
            if not value.strip():
                emit("ERROR", "AUTH", f"{label} is missing or empty")
                return False
        return True

    def _application(self) -> ConfidentialClientApplication:
        if self._cca is None:
            self._cca = ConfidentialClientApplication(
                self._client_id,
                authority=f"https://login.microsoftonline.com/{self._tenant_id}",
                client_credential=self._client_secret,
            )
        return self._cca

    def invalidate(self):
        with self._token_lock:
            self._cached_token = None
            self._cached_token_expires_at = 0.0

    def get_token(self) -> str:
        now = time.time()
        if self._cached_token and now < (self._cached_token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS):
            return self._cached_token

        with self._token_lock:
            now = time.time()
            if self._cached_token and now < (self._cached_token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS):
                return self._cached_token

            cca = self._application()
            result = cca.acquire_token_silent(GRAPH_SCOPES, account=None)
            if not result:
                result = cca.acquire_token_for_client(scopes=GRAPH_SCOPES)
            access_token = result.get("access_token")
            if not access_token:
                reason = result.get("error_description") or result.get("error") or "missing access_token"
                emit("ERROR", "AUTH", f"Graph token acquisition failed: {reason}")
                raise RuntimeError("Failed to acquire Graph token")

            expires_in = result.get("expires_in")
            if isinstance(expires_in, (int, float)):
                self._cached_token_expires_at = time.time() + float(expires_in)
            else:
                self._cached_token_expires_at = time.time() + DEFAULT_TOKEN_LIFETIME_SECONDS
            self._cached_token = access_token
            return access_token
