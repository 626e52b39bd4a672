"""Identity provider access.

The provider runs as an ordinary ProcessHandle. Realm setup belongs to the
provider's own configuration; this module only reads tokens and hands out
the service credentials capabilities need to register with the router.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .config import AuthConfig
from .process import IllegalStateError, ProcessHandle


logger = logging.getLogger(__name__)

TOKEN_REQUEST_TIMEOUT = 10


class AuthError(RuntimeError):
    """Raised when a token could not be obtained."""


@dataclass(frozen=True)
class OidcCredentials:
    """Client credentials a capability uses to obtain its own tokens."""
    auth_server_url: str
    client_id: str
    client_secret: str


class AuthProvider:
    """Identity provider process plus token acquisition."""

    def __init__(self, config: AuthConfig, handle: ProcessHandle, host: str = "localhost"):
        self.config = config
        self.handle = handle
        self.host = host

    def start(self, test_name: Optional[str] = None) -> None:
        self.handle.start(test_name)
        logger.debug("Identity provider started at %s", self.base_url)

    def stop(self) -> None:
        self.handle.stop()

    def is_running(self) -> bool:
        return self.handle.is_running()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.config.port}"

    @property
    def realm_url(self) -> str:
        return f"{self.base_url}/realms/{self.config.realm}"

    @property
    def token_endpoint(self) -> str:
        return f"{self.realm_url}/protocol/openid-connect/token"

    def get_access_token(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> str:
        """Get an access token using the password grant.

        Args:
            username: Defaults to the configured test user.
            password: Defaults to the configured test password.

        Returns:
            The access token.

        Raises:
            AuthError: If the provider rejected the request or is unreachable.
        """
        username = username or self.config.username
        form = urlencode({
            "grant_type": "password",
            "client_id": self.config.client_id,
            "username": username,
            "password": password or self.config.password,
            "scope": self.config.scope,
        }).encode("utf-8")

        request = Request(
            self.token_endpoint,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )

        try:
            with urlopen(request, timeout=TOKEN_REQUEST_TIMEOUT) as response:
                body = response.read().decode("utf-8")
        except HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")
            raise AuthError(f"Failed to get access token: {e.code} - {detail}") from e
        except (URLError, OSError) as e:
            raise AuthError(f"Failed to get access token: {e}") from e

        try:
            token = json.loads(body)["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError(f"Could not extract access_token from: {body}") from e

        logger.debug("Obtained access token for user: %s", username)
        return token

    def service_credentials(self) -> OidcCredentials:
        """Credentials for capability registration.

        Raises:
            IllegalStateError: If the provider is not running.
        """
        if not self.is_running():
            raise IllegalStateError("Identity provider is not running")
        return OidcCredentials(
            auth_server_url=self.realm_url,
            client_id=self.config.service_client_id,
            client_secret=self.config.service_client_secret,
        )
