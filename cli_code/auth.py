"""Access-token refresh, login and logout against the auth backend."""

from typing import Any, Optional

import requests

from .config import Config
from .logger import get_logger

_log = get_logger(__name__)

REFRESH_PATH = "/cli/tokens/refresh"
TIMEOUT = 30


class TokenRefresher:
    """Trade a refresh token for a new access token and persist it."""

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        self.config = config
        self._session = session or requests.Session()

    def _request_access_token(self, refresh_token: str) -> Optional[str]:
        try:
            resp = self._session.post(
                f"{self.config.backend_url}{REFRESH_PATH}",
                json={"refreshToken": refresh_token},
                timeout=TIMEOUT,
            )
        except requests.RequestException as e:
            _log.error("Network error while refreshing token: %s", e)
            return None
        if not resp.ok:
            _log.error("Failed to refresh token: %s", resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError:
            _log.error("Refresh endpoint returned a non-JSON body")
            return None
        token = data.get("accessToken") if isinstance(data, dict) else None
        return token or None

    def refresh(self) -> Optional[str]:
        if not self.config.refresh_token:
            _log.error("No refresh token found")
            return None
        token = self._request_access_token(self.config.refresh_token)
        if token:
            self.config.update(access_token=token)
        return token

    def handle_token_expiry(self, error_data: Any) -> Optional[str]:
        """Refresh only for an expired token; any other auth failure is final."""
        if not isinstance(error_data, dict) or not error_data.get("error"):
            return None
        error = error_data["error"]
        details = error.get("details") if isinstance(error, dict) else None
        name = details.get("name") if isinstance(details, dict) else None
        if name == "TokenExpiredError":
            _log.info("Token expired, refreshing...")
            return self.refresh()
        if name == "JsonWebTokenError":
            _log.error("Invalid token")
        else:
            _log.error("Unknown auth error: %s", error)
        return None

    def __call__(self, error_data: Any) -> Optional[str]:
        return self.handle_token_expiry(error_data)

    def login(self, refresh_token: str) -> Optional[str]:
        token = self._request_access_token(refresh_token)
        if token:
            self.config.update(access_token=token, refresh_token=refresh_token)
        return token

    def logout(self) -> bool:
        try:
            self.config.clear_credentials()
        except OSError as e:
            _log.error("Error logging out: %s", e)
            return False
        return True
