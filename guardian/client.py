"""
Operator client for the guardian control API.

Signs every request with a fresh timestamp and nonce so the shared secret
never travels over the wire.
"""

import secrets
import time
from typing import Optional

import httpx

from .auth import NONCE_HEADER, SIGNATURE_HEADER, TIMESTAMP_HEADER, build_signature_payload, compute_signature


class GuardianClient:
    """HMAC-signing client for a running guardian."""

    def __init__(
        self,
        secret: str,
        base_url: str = "http://127.0.0.1:8787",
        timeout: float = 30.0,
        http: Optional[httpx.Client] = None,
    ):
        self.secret = secret
        # Stop waits up to the SIGTERM grace period, so keep the timeout generous
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self):
        self._http.close()

    def __enter__(self) -> "GuardianClient":
        return self

    def __exit__(self, *exc_info):
        self.close()

    def signed_headers(self, method: str, path: str, body: str = "") -> dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        nonce = secrets.token_hex(16)
        payload = build_signature_payload(method, path, timestamp, nonce, body)
        return {
            TIMESTAMP_HEADER: timestamp,
            NONCE_HEADER: nonce,
            SIGNATURE_HEADER: f"sha256={compute_signature(self.secret, payload)}",
        }

    def _request(self, method: str, path: str, params: Optional[dict] = None) -> dict:
        headers = self.signed_headers(method, path)
        response = self._http.request(method, path, params=params, headers=headers)
        response.raise_for_status()
        return response.json()

    def healthz(self) -> dict:
        response = self._http.get("/healthz")
        response.raise_for_status()
        return response.json()

    def status(self) -> dict:
        return self._request("GET", "/status")

    def logs(self, tail: int = 200) -> list[dict]:
        return self._request("GET", "/logs", params={"tail": tail})["logs"]

    def restart(self) -> dict:
        return self._request("POST", "/restart")

    def stop(self) -> dict:
        return self._request("POST", "/stop")

    def start(self) -> dict:
        return self._request("POST", "/start")
