"""
Certificate issuance and renewal over ACME.

One certificate per domain, validated with HTTP-01: the key authorization is
written under the static root at /.well-known/acme-challenge/<token>, which the
plaintext site block serves. Bundles land in <cert_dir>/<domain>/ as
fullchain.pem and privkey.pem.

Before any request reaches the authority every pending domain must resolve
only to addresses of this host. Rate limits and authority rejections are
surfaced immediately; only transient network failures are retried.
"""

import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

import josepy as jose
import psutil
import requests
from acme import challenges, client, crypto_util, errors, messages
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .config import config
from .errors import AbortError, CertificateError, RateLimitError, ValidationError
from .models import CertificateBundle, DeploymentTarget
from .system import write_atomic

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
CHALLENGE_DIR = Path(".well-known") / "acme-challenge"


class TransientAuthorityError(Exception):
    """Authority round trip failed in a way worth retrying."""


class RunAborted(AbortError):
    """The caller cancelled the run before this domain was started."""

    def __init__(self, message: str, domain: str = None):
        super().__init__(message)
        self.domain = domain


def generate_key_pem(key_size: int = KEY_SIZE) -> bytes:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def read_expiry(certificate_path: Path) -> datetime:
    """Expiry of the leaf (first) certificate in a PEM file."""
    cert = x509.load_pem_x509_certificate(Path(certificate_path).read_bytes())
    return cert.not_valid_after_utc


def system_resolver(domain: str) -> set[str]:
    try:
        infos = socket.getaddrinfo(domain, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror as e:
        raise ValidationError(f"{domain} does not resolve: {e}", domain=domain)
    return {info[4][0] for info in infos}


def local_addresses() -> set[str]:
    """Non-loopback interface addresses plus configured public addresses."""
    addresses = set(config.public_addresses)
    for addrs in psutil.net_if_addrs().values():
        for addr in addrs:
            if addr.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            ip = addr.address.split("%", 1)[0]
            if ip.startswith("127.") or ip == "::1":
                continue
            addresses.add(ip)
    return addresses


class ChallengeStore:
    """Publishes HTTP-01 key authorizations under the static root."""

    def __init__(self, static_root: str):
        self.root = Path(static_root) / CHALLENGE_DIR

    def publish(self, token: str, validation: str):
        if "/" in token or token.startswith("."):
            raise ValidationError(f"Refusing suspicious challenge token {token!r}")
        write_atomic(self.root / token, validation, mode=0o644)
        logger.debug(f"Published challenge token {token}")

    def remove(self, token: str):
        try:
            (self.root / token).unlink()
        except FileNotFoundError:
            pass


class AcmeAuthority:
    """ACME v2 client issuing single-domain certificates via HTTP-01."""

    def __init__(
        self,
        directory_url: str = None,
        email: str = "",
        account_key_dir: Path = None,
        timeout: int = None,
    ):
        self.directory_url = directory_url or config.acme_directory_url
        self.email = email or config.acme_email
        self.account_key_dir = Path(account_key_dir) if account_key_dir else None
        self.timeout = timeout or config.acme_timeout
        self._client: client.ClientV2 = None
        self._lock = threading.Lock()

    def _account_key(self) -> jose.JWKRSA:
        provider = urlparse(self.directory_url).hostname.replace(".", "_")
        key_path = self.account_key_dir / f"{provider}.pem"

        if key_path.exists():
            key_pem = key_path.read_bytes()
        else:
            key_pem = generate_key_pem()
            write_atomic(key_path, key_pem, mode=0o600)
            logger.info(f"Generated ACME account key at {key_path}")

        private_key = serialization.load_pem_private_key(key_pem, password=None)
        return jose.JWKRSA(key=private_key)

    def _get_client(self) -> client.ClientV2:
        with self._lock:
            if self._client is not None:
                return self._client

            net = client.ClientNetwork(self._account_key(), timeout=self.timeout)
            directory = client.ClientV2.get_directory(self.directory_url, net)
            acme_client = client.ClientV2(directory, net=net)

            contact = (f"mailto:{self.email}",) if self.email else ()
            try:
                acme_client.new_account(
                    messages.NewRegistration(contact=contact, terms_of_service_agreed=True)
                )
                logger.info(f"Registered ACME account at {self.directory_url}")
            except errors.ConflictError as e:
                # Account key already registered
                acme_client.query_registration(
                    messages.RegistrationResource(uri=e.location, body=messages.Registration())
                )
                logger.info(f"Using existing ACME account at {self.directory_url}")

            self._client = acme_client
            return acme_client

    def issue(self, domain: str, key_pem: bytes, store: ChallengeStore) -> str:
        """Run one order for ``domain`` and return the full chain PEM."""
        try:
            return self._issue(domain, key_pem, store)
        except messages.Error as e:
            if e.code == "rateLimited":
                raise RateLimitError(f"Rate limited for {domain}: {e.detail}", domain=domain)
            if e.code in ("serverInternal", "badNonce"):
                raise TransientAuthorityError(str(e))
            raise ValidationError(f"Authority rejected {domain}: {e}", domain=domain)
        except errors.ValidationError as e:
            details = "; ".join(
                str(challb.error)
                for authzr in e.failed_authzrs
                for challb in authzr.body.challenges
                if challb.error
            )
            raise ValidationError(f"Validation failed for {domain}: {details}", domain=domain)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout, errors.TimeoutError) as e:
            raise TransientAuthorityError(f"{type(e).__name__}: {e}")
        except (errors.IssuanceError, errors.PollError) as e:
            raise ValidationError(f"Order for {domain} did not complete: {e}", domain=domain)
        except errors.ClientError as e:
            # Non-JSON error bodies, e.g. a gateway page in front of the authority
            response = e.args[0] if e.args else None
            status = getattr(response, "status_code", None)
            if status is not None and status >= 500:
                raise TransientAuthorityError(f"Authority returned HTTP {status}")
            raise ValidationError(f"Authority rejected {domain}: HTTP {status}", domain=domain)

    def _issue(self, domain: str, key_pem: bytes, store: ChallengeStore) -> str:
        acme_client = self._get_client()
        csr_pem = crypto_util.make_csr(key_pem, [domain])
        order = acme_client.new_order(csr_pem)

        published = []
        try:
            for authzr in order.authorizations:
                if authzr.body.status == messages.STATUS_VALID:
                    continue
                challb = next(
                    (c for c in authzr.body.challenges if isinstance(c.chall, challenges.HTTP01)),
                    None,
                )
                if challb is None:
                    raise ValidationError(f"No HTTP-01 challenge offered for {domain}", domain=domain)

                response, validation = challb.response_and_validation(acme_client.net.key)
                token = challb.chall.encode("token")
                store.publish(token, validation)
                published.append(token)
                acme_client.answer_challenge(challb, response)

            deadline = datetime.now() + timedelta(seconds=self.timeout * 3)
            order = acme_client.poll_and_finalize(order, deadline=deadline)
        finally:
            for token in published:
                store.remove(token)

        return order.fullchain_pem


class CertificateManager:
    """Issues and renews per-domain certificates for a deployment target."""

    def __init__(
        self,
        target: DeploymentTarget,
        authority=None,
        resolver: Callable[[str], set[str]] = system_resolver,
        local_addresses: Callable[[], set[str]] = local_addresses,
        workers: int = None,
        max_attempts: int = None,
        backoff_seconds: float = None,
        renew_before_days: int = None,
        abort_event: threading.Event = None,
    ):
        self.target = target
        self.authority = authority or AcmeAuthority(
            email=target.email,
            account_key_dir=Path(target.cert_dir) / ".account",
        )
        self._resolve = resolver
        self._local_addresses = local_addresses
        self.workers = workers or config.acme_workers
        self.max_attempts = max_attempts or config.acme_max_attempts
        self.backoff_seconds = config.acme_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.renew_before_days = (
            config.renew_before_days if renew_before_days is None else renew_before_days
        )
        self.abort_event = abort_event or threading.Event()
        self.store = ChallengeStore(target.static_path)

    def load_bundle(self, domain: str) -> CertificateBundle | None:
        """Current bundle for a domain, or None if missing or unreadable."""
        bundle_dir = self.target.bundle_dir(domain)
        cert_path = bundle_dir / "fullchain.pem"
        key_path = bundle_dir / "privkey.pem"
        if not cert_path.exists() or not key_path.exists():
            return None
        try:
            expires_at = read_expiry(cert_path)
        except ValueError as e:
            logger.warning(f"Unreadable certificate for {domain}: {e}")
            return None
        return CertificateBundle(
            domain=domain,
            certificate_path=cert_path,
            private_key_path=key_path,
            expires_at=expires_at,
        )

    def needs_issue(self, domain: str) -> bool:
        bundle = self.load_bundle(domain)
        if bundle is None:
            return True
        return bundle.days_left(datetime.now(timezone.utc)) <= self.renew_before_days

    def pending(self, domains: list[str]) -> list[str]:
        """Domains with no bundle or one expiring within the renewal window."""
        return [d for d in domains if self.needs_issue(d)]

    def usable(self, domains: list[str]) -> list[str]:
        """Domains whose current bundle has not expired, renewal due or not."""
        usable = []
        for domain in domains:
            bundle = self.load_bundle(domain)
            if bundle is not None and bundle.days_left() > 0:
                usable.append(domain)
        return usable

    def check_dns(self, domains: list[str]):
        """Raise ValidationError unless every domain resolves only to this host."""
        local = self._local_addresses()
        for domain in domains:
            resolved = self._resolve(domain)
            if not resolved:
                raise ValidationError(f"{domain} does not resolve", domain=domain)
            foreign = sorted(resolved - local)
            if foreign:
                raise ValidationError(
                    f"{domain} resolves to {', '.join(foreign)} which is not this host",
                    domain=domain,
                )
            logger.info(f"DNS for {domain} points at this host ({', '.join(sorted(resolved))})")

    def _issue_with_retries(self, domain: str, key_pem: bytes) -> str:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.authority.issue(domain, key_pem, self.store)
            except TransientAuthorityError as e:
                if attempt == self.max_attempts:
                    raise CertificateError(
                        f"Authority unreachable for {domain} after {attempt} attempts: {e}",
                        domain=domain,
                    )
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Transient authority failure for {domain} (attempt {attempt}/"
                    f"{self.max_attempts}), retrying in {delay:.1f}s: {e}"
                )
                if self.abort_event.wait(delay):
                    raise RunAborted(f"Run aborted while retrying {domain}", domain=domain)

    def _issue_one(self, domain: str) -> CertificateBundle:
        if self.abort_event.is_set():
            raise RunAborted(f"Run aborted before issuing {domain}", domain=domain)

        logger.info(f"Requesting certificate for {domain}")
        key_pem = generate_key_pem()
        fullchain_pem = self._issue_with_retries(domain, key_pem)

        bundle_dir = self.target.bundle_dir(domain)
        key_path = bundle_dir / "privkey.pem"
        cert_path = bundle_dir / "fullchain.pem"
        write_atomic(key_path, key_pem, mode=0o600)
        write_atomic(cert_path, fullchain_pem, mode=0o644)

        bundle = CertificateBundle(
            domain=domain,
            certificate_path=cert_path,
            private_key_path=key_path,
            expires_at=read_expiry(cert_path),
            issued=True,
        )
        logger.info(f"Stored certificate for {domain}, expires {bundle.expires_at.isoformat()}")
        return bundle

    def _issue_guarded(self, domain: str) -> CertificateBundle:
        try:
            return self._issue_one(domain)
        except BaseException:
            # Stop the pool from starting further domains
            self.abort_event.set()
            raise

    def issue_or_renew(self, domains: list[str]) -> dict[str, CertificateBundle]:
        """
        Ensure every domain has a bundle valid beyond the renewal window.

        Safe to call repeatedly: domains with enough validity left are skipped.
        Raises the first ValidationError/RateLimitError/CertificateError hit;
        domains not yet started at that point are left unissued.
        """
        bundles = {}
        pending = []
        for domain in domains:
            if self.needs_issue(domain):
                pending.append(domain)
            else:
                bundles[domain] = self.load_bundle(domain)
                logger.info(
                    f"Certificate for {domain} valid for "
                    f"{bundles[domain].days_left():.0f} more days, skipping"
                )

        if not pending:
            return bundles

        self.check_dns(pending)

        with ThreadPoolExecutor(max_workers=max(1, self.workers)) as pool:
            futures = [(d, pool.submit(self._issue_guarded, d)) for d in pending]

        first_error = None
        for domain, future in futures:
            try:
                bundles[domain] = future.result()
            except RunAborted as e:
                logger.info(str(e))
                first_error = first_error or e
            except CertificateError as e:
                logger.error(f"Certificate for {domain} failed: {e}")
                if first_error is None or isinstance(first_error, RunAborted):
                    first_error = e

        if first_error is not None:
            raise first_error

        return {d: bundles[d] for d in domains}
