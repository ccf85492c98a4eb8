"""
Data model for tlsdeploy.

Deployment inputs and artifacts are plain dataclasses. Run history and the
registry of installed services use Peewee ORM with SQLite.
"""

import hashlib
import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

from peewee import (
    AutoField,
    BooleanField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    FloatField,
    ForeignKeyField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

database = DatabaseProxy()


@dataclass
class DeploymentTarget:
    """What to deploy: domains, where traffic goes and where files live."""

    domains: list[str]
    upstream: str
    static_path: str
    cert_dir: str
    static_prefix: str = "/static"
    email: str = ""

    def bundle_dir(self, domain: str) -> Path:
        return Path(self.cert_dir) / domain

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ServiceDefinition:
    """A backend process to run under systemd."""

    name: str
    working_directory: str
    command: str
    user: str
    group: str
    environment: dict[str, str] = field(default_factory=dict)

    def digest(self) -> str:
        """Stable hash of the definition, used to detect changes."""
        payload = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CertificateBundle:
    """Certificate and key for one domain."""

    domain: str
    certificate_path: Path
    private_key_path: Path
    expires_at: datetime
    # True when written during this run
    issued: bool = field(default=False, compare=False)

    def days_left(self, now: datetime = None) -> float:
        now = now or datetime.now(self.expires_at.tzinfo)
        return (self.expires_at - now).total_seconds() / 86400

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "certificate_path": str(self.certificate_path),
            "private_key_path": str(self.private_key_path),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class Route:
    """A single routing rule inside a server block.

    kind is one of: redirect, acme_challenge, static, proxy.
    """

    kind: str
    target: str
    path: str = "/*"


@dataclass
class TLSRef:
    """Reference to the certificate bundle a TLS block serves."""

    certificate_path: str
    private_key_path: str


@dataclass
class ServerBlock:
    listen_port: int
    domains: list[str]
    routes: list[Route]
    tls: TLSRef = None

    @property
    def scheme(self) -> str:
        return "https" if self.tls else "http"

    @property
    def address(self) -> str:
        return ", ".join(f"{self.scheme}://{d}:{self.listen_port}" for d in self.domains)


@dataclass
class ProxyConfig:
    """Generated reverse-proxy configuration. Owned by the renderer."""

    server_blocks: list[ServerBlock] = field(default_factory=list)

    def redirect_blocks(self) -> list[ServerBlock]:
        return [b for b in self.server_blocks if b.tls is None]

    def tls_blocks(self) -> list[ServerBlock]:
        return [b for b in self.server_blocks if b.tls is not None]


def initialize_db(db_path: Path):
    """Initialize database connection and create tables."""
    os.makedirs(os.path.dirname(str(db_path)), exist_ok=True)
    db = SqliteDatabase(
        str(db_path),
        pragmas={
            "journal_mode": "wal",
            "foreign_keys": 1,
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([ServiceRecord, DeploymentRun, StepRecord], safe=True)
    return db


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class ServiceRecord(BaseModel):
    """An installed service definition."""

    id = AutoField()
    name = CharField(unique=True, index=True)
    definition = TextField()  # JSON of ServiceDefinition
    digest = CharField()
    needs_restart = BooleanField(default=False)
    created_at = DateTimeField(default=datetime.now)
    updated_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "services"

    def save(self, *args, **kwargs):
        self.updated_at = datetime.now()
        return super().save(*args, **kwargs)

    def get_definition(self) -> ServiceDefinition:
        return ServiceDefinition(**json.loads(self.definition))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "definition": json.loads(self.definition),
            "digest": self.digest,
            "needs_restart": self.needs_restart,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class DeploymentRun(BaseModel):
    """Record of one orchestrator run."""

    id = AutoField()
    kind = CharField(default="deploy")  # deploy, renew
    domains = TextField()  # JSON list
    upstream = CharField(null=True)
    state = CharField(default="Rendering")
    failed_step = CharField(null=True)
    message = TextField(null=True)
    exit_code = IntegerField(null=True)
    dry_run = BooleanField(default=False)
    started_at = DateTimeField(default=datetime.now, index=True)
    finished_at = DateTimeField(null=True)

    class Meta:
        table_name = "deployment_runs"

    def get_domains(self) -> list[str]:
        try:
            return json.loads(self.domains)
        except (json.JSONDecodeError, TypeError):
            return []

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "domains": self.get_domains(),
            "upstream": self.upstream,
            "state": self.state,
            "failed_step": self.failed_step,
            "message": self.message,
            "exit_code": self.exit_code,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class StepRecord(BaseModel):
    """Record of a single step within a run."""

    id = AutoField()
    run = ForeignKeyField(DeploymentRun, backref="steps", on_delete="CASCADE")
    state = CharField()
    success = BooleanField(default=False)
    changed = BooleanField(default=False)
    message = TextField(null=True)
    duration_seconds = FloatField(null=True)
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "step_records"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "state": self.state,
            "success": self.success,
            "changed": self.changed,
            "message": self.message,
            "duration_seconds": self.duration_seconds,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
