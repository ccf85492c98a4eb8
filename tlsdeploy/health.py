"""
Post-deployment HTTPS checks.

A domain is healthy when both its root path and the static prefix (or a
configured file under it) answer with a non-error status over a certificate
chain that verifies against the trusted roots.
"""

import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from .config import config

logger = logging.getLogger(__name__)


@dataclass
class HealthResult:
    """Outcome of checking one domain."""

    domain: str
    ok: bool
    error: str = None
    statuses: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "ok": self.ok,
            "error": self.error,
            "statuses": self.statuses,
        }


class HealthChecker:
    """Checks that deployed domains serve traffic over TLS."""

    def __init__(
        self,
        static_prefix: str = "/static",
        static_file: str = None,
        https_port: int = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        static_file = config.health_static_file if static_file is None else static_file
        # Caddy's file_server answers 404 for a directory without an index file
        self.static_url_path = "/" + static_prefix.strip("/") + "/" + static_file.lstrip("/")
        self.https_port = https_port or config.https_port
        self.timeout = timeout or config.health_timeout
        self._transport = transport

    def _base_url(self, domain: str) -> str:
        if self.https_port == 443:
            return f"https://{domain}"
        return f"https://{domain}:{self.https_port}"

    async def _check_domain(self, client: httpx.AsyncClient, domain: str) -> HealthResult:
        result = HealthResult(domain=domain, ok=True)
        base = self._base_url(domain)

        for path in ("/", self.static_url_path):
            try:
                response = await client.get(f"{base}{path}")
            except httpx.ConnectError as e:
                # Certificate verification failures surface here too
                result.ok = False
                result.error = f"{path}: connection failed: {e}"
                break
            except httpx.TimeoutException:
                result.ok = False
                result.error = f"{path}: timed out after {self.timeout}s"
                break
            except httpx.HTTPError as e:
                result.ok = False
                result.error = f"{path}: {type(e).__name__}: {e}"
                break

            result.statuses[path] = response.status_code
            if response.status_code >= 400:
                result.ok = False
                result.error = f"{path}: HTTP {response.status_code}"
                break

        if result.ok:
            logger.info(f"{domain} is healthy")
        else:
            logger.warning(f"{domain} failed health check: {result.error}")
        return result

    async def check(self, domains: list[str]) -> dict[str, HealthResult]:
        """Check every domain concurrently."""
        async with httpx.AsyncClient(
            verify=True,
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            results = await asyncio.gather(
                *(self._check_domain(client, domain) for domain in domains)
            )
        return {r.domain: r for r in results}
