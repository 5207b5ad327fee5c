"""RoflKeyProvider: Signing key retrieval from the ROFL appd daemon.

When the oracle runs inside a ROFL TEE the signing key is derived by the appd
and never leaves the enclave. The key is fetched once at startup and handed
to :class:`~.Signer.AccountSigner`. The appd may still be starting when the
oracle boots, so failed requests are retried following a :class:`RetryPolicy`.
"""

import logging
import time

import httpx

from .errors import FatalError
from .RetryManager import RetryPolicy

logger = logging.getLogger(__name__)

KEY_GENERATE_PATH = "/rofl/v1/keys/generate"

# The appd socket usually appears within half a minute of boot
APPD_RETRY = RetryPolicy(max_attempts=30, base_delay=1.0, max_delay=5.0, multiplier=1.5)


class RoflKeyProvider:
    """Fetches keys from the ROFL appd via Unix domain socket or HTTP.

    :cvar ROFL_SOCKET_PATH: Default Unix socket path for appd.
    :ivar url: Optional HTTP URL or socket path override.
    :ivar policy: Retry policy for unreachable or failing appd.
    """

    ROFL_SOCKET_PATH = "/run/rofl-appd.sock"

    def __init__(
        self,
        url: str = "",
        transport: httpx.BaseTransport | None = None,
        policy: RetryPolicy = APPD_RETRY,
    ) -> None:
        """Initialize the key provider.

        :param url: Optional URL or socket path. Empty uses default socket.
        :param transport: Optional transport override.
        :param policy: Retry policy (default: 30 attempts, 1s to 5s apart).
        """
        self.url = url
        self.policy = policy
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self.url if self.url.startswith("http") else "http://localhost"

    def _client(self) -> httpx.Client:
        transport = self._transport
        if transport is None and not self.url.startswith("http"):
            transport = httpx.HTTPTransport(uds=self.url or self.ROFL_SOCKET_PATH)
        return httpx.Client(base_url=self.base_url, transport=transport, timeout=None)

    def _request_key(self, client: httpx.Client, key_id: str) -> str | None:
        """Ask the appd for a key once.

        :returns: The key, or None if the request should be retried.
        :raises FatalError: If the appd answered without a key.
        """
        try:
            response = client.post(
                KEY_GENERATE_PATH, json={"key_id": key_id, "kind": "secp256k1"}
            )
        except httpx.RequestError as e:
            logger.warning(f"appd unreachable while fetching key '{key_id}': {e}")
            return None

        if not response.is_success:
            logger.warning(
                f"appd refused key '{key_id}': {response.status_code} {response.reason_phrase}"
            )
            return None

        try:
            key = response.json()["key"]
        except (ValueError, KeyError) as e:
            raise FatalError(f"appd returned no key for '{key_id}'") from e
        return key if key.startswith("0x") else "0x" + key

    def fetch_key(self, key_id: str) -> str:
        """Generate or fetch a secp256k1 key by ID.

        :param key_id: Key identifier, stable across restarts.
        :returns: Hex encoded private key.
        :raises FatalError: If the appd is unreachable or returns no key.
        """
        attempts = self.policy.max_attempts
        with self._client() as client:
            for attempt in range(1, attempts + 1):
                key = self._request_key(client, key_id)
                if key is not None:
                    logger.info(f"Fetched signing key '{key_id}' from appd")
                    return key
                if attempt < attempts:
                    time.sleep(self.policy.delay(attempt))

        raise FatalError(f"appd key request failed after {attempts} attempts")
