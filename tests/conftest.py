"""Shared fixtures: isolated config and database, fake system commands, test certificates."""

import os
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from tlsdeploy.certificates import ChallengeStore
from tlsdeploy.config import config
from tlsdeploy.models import DeploymentTarget, ServiceDefinition, database, initialize_db

PUBLIC_IP = "203.0.113.10"


def make_cert_pem(domain: str, days: int, key=None) -> tuple[str, bytes]:
    """Self-signed certificate for domain expiring ``days`` from now."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    not_after = datetime.now(timezone.utc) + timedelta(days=days)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=90))
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode(), key_pem


def write_bundle(cert_dir: Path, domain: str, days: int) -> bytes:
    """Store a bundle as the certificate manager would. Returns the cert bytes."""
    cert_pem, key_pem = make_cert_pem(domain, days)
    bundle_dir = Path(cert_dir) / domain
    bundle_dir.mkdir(parents=True, exist_ok=True)
    (bundle_dir / "fullchain.pem").write_text(cert_pem)
    (bundle_dir / "privkey.pem").write_bytes(key_pem)
    return cert_pem.encode()


class FakeAuthority:
    """Stands in for the ACME authority and signs with the requested key."""

    def __init__(self, validity_days: int = 90, failures: dict = None):
        self.validity_days = validity_days
        self.failures = failures or {}
        self.calls = []
        self.challenges_seen = []

    def issue(self, domain: str, key_pem: bytes, store: ChallengeStore) -> str:
        self.calls.append(domain)
        failure = self.failures.get(domain)
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
        elif failure is not None:
            raise failure

        token = f"token-{domain}"
        store.publish(token, f"{token}.thumbprint")
        self.challenges_seen.append((store.root / token).read_text())
        store.remove(token)

        key = serialization.load_pem_private_key(key_pem, password=None)
        cert_pem, _ = make_cert_pem(domain, self.validity_days, key=key)
        return cert_pem


class FakeRunner:
    """Records commands and answers like systemctl and caddy would."""

    def __init__(self):
        self.calls = []
        self.active = set()
        self.states = {}
        self.fail = {}

    def count(self, *prefix: str) -> int:
        return sum(1 for argv in self.calls if tuple(argv[: len(prefix)]) == prefix)

    def __call__(self, argv, timeout=30, sudo=False):
        argv = list(argv)
        self.calls.append(argv)

        for prefix, response in self.fail.items():
            if tuple(argv[: len(prefix)]) == prefix:
                if isinstance(response, BaseException):
                    raise response
                return subprocess.CompletedProcess(argv, response[0], "", response[1])

        if argv[:2] == ["systemctl", "is-active"]:
            state = self.states.get(argv[2]) or ("active" if argv[2] in self.active else "inactive")
            return subprocess.CompletedProcess(argv, 0 if state == "active" else 3, state + "\n", "")
        if argv[:2] in (["systemctl", "start"], ["systemctl", "restart"]):
            self.active.add(argv[2])
        if argv[:2] == ["systemctl", "stop"]:
            self.active.discard(argv[2])

        if argv[1:2] == ["validate"]:
            return subprocess.CompletedProcess(argv, 0, "", "Valid configuration\n")
        return subprocess.CompletedProcess(argv, 0, "", "")


def fake_user(name):
    if name in ("root", "toor"):
        return SimpleNamespace(pw_uid=0)
    if name == "ghost":
        raise KeyError(name)
    return SimpleNamespace(pw_uid=1000)


def fake_group(name):
    if name in ("root", "wheel0"):
        return SimpleNamespace(gr_gid=0)
    return SimpleNamespace(gr_gid=1000)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point every configured path into the test's temp directory."""
    data_dir = tmp_path / "data"
    monkeypatch.setattr(config, "data_dir", data_dir)
    monkeypatch.setattr(config, "db_path", data_dir / "tlsdeploy.db")
    monkeypatch.setattr(config, "staging_dir", data_dir / "staging")
    monkeypatch.setattr(config, "log_file", data_dir / "tlsdeploy.log")
    monkeypatch.setattr(config, "caddy_site_file", str(tmp_path / "caddy" / "tlsdeploy.conf"))
    monkeypatch.setattr(config, "caddyfile", str(tmp_path / "caddy" / "Caddyfile"))
    monkeypatch.setattr(config, "unit_dir", str(tmp_path / "systemd"))
    monkeypatch.setattr(config, "env_dir", str(tmp_path / "env"))
    monkeypatch.setattr(config, "use_sudo", False)
    monkeypatch.setattr(config, "public_addresses", [])
    monkeypatch.setattr(config, "health_static_file", "")
    return config


@pytest.fixture(autouse=True)
def db(isolated_config):
    connection = initialize_db(isolated_config.db_path)
    yield connection
    database.close()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def target(tmp_path) -> DeploymentTarget:
    static = tmp_path / "static"
    static.mkdir()
    return DeploymentTarget(
        domains=["a.example", "b.example"],
        upstream="127.0.0.1:5000",
        static_path=str(static),
        cert_dir=str(tmp_path / "certs"),
    )


@pytest.fixture
def backend(tmp_path) -> ServiceDefinition:
    workdir = tmp_path / "app"
    workdir.mkdir()
    script = workdir / "serve.sh"
    script.write_text("#!/bin/sh\nexec sleep infinity\n")
    os.chmod(script, 0o755)
    return ServiceDefinition(
        name="webapp",
        working_directory=str(workdir),
        command=f"{script} --port 5000",
        user="app",
        group="app",
        environment={"SECRET_KEY": 's3cr3t "quoted"', "PORT": "5000"},
    )


@pytest.fixture
def resolver():
    return lambda domain: {PUBLIC_IP}


@pytest.fixture
def local_ips():
    return lambda: {PUBLIC_IP, "10.0.0.5"}
