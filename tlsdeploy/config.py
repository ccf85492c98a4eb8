"""
Configuration for tlsdeploy.

Loads settings from environment variables with sensible defaults.
Run history and the service registry are stored in ~/.tlsdeploy/
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Config:
    """tlsdeploy configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("TLSDEPLOY_DATA_DIR", str(Path.home() / ".tlsdeploy")))
    db_path: Path = None
    staging_dir: Path = None
    log_file: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Caddy
    caddy_bin: str = os.environ.get("CADDY_BIN", "caddy")
    caddyfile: str = os.environ.get("CADDYFILE", "/etc/caddy/Caddyfile")
    caddy_site_file: str = os.environ.get("CADDY_SITE_FILE", "/etc/caddy/tlsdeploy.conf")
    caddy_admin_url: str = os.environ.get("CADDY_ADMIN_URL", "http://localhost:2019")
    http_port: int = int(os.environ.get("CADDY_HTTP_PORT", "80"))
    https_port: int = int(os.environ.get("CADDY_HTTPS_PORT", "443"))

    # systemd
    unit_dir: str = os.environ.get("SYSTEMD_UNIT_DIR", "/etc/systemd/system")
    env_dir: str = os.environ.get("TLSDEPLOY_ENV_DIR", "/etc/tlsdeploy")
    use_sudo: bool = os.environ.get("TLSDEPLOY_USE_SUDO", "false").lower() == "true"
    command_timeout: int = int(os.environ.get("COMMAND_TIMEOUT", "30"))
    restart_delay: int = int(os.environ.get("RESTART_DELAY", "5"))

    # ACME
    acme_directory_url: str = os.environ.get(
        "ACME_DIRECTORY_URL", "https://acme-v02.api.letsencrypt.org/directory"
    )
    acme_email: str = os.environ.get("ACME_EMAIL", "")
    acme_timeout: int = int(os.environ.get("ACME_TIMEOUT", "30"))
    acme_max_attempts: int = int(os.environ.get("ACME_MAX_ATTEMPTS", "3"))
    acme_backoff_seconds: float = float(os.environ.get("ACME_BACKOFF_SECONDS", "2"))
    acme_workers: int = int(os.environ.get("ACME_WORKERS", "2"))
    renew_before_days: int = int(os.environ.get("RENEW_BEFORE_DAYS", "30"))

    # Addresses this host answers on besides its interface addresses (e.g. behind NAT)
    public_addresses: list[str] = field(
        default_factory=lambda: _split_list(os.environ.get("PUBLIC_ADDRESSES", ""))
    )

    # Health checks
    health_timeout: float = float(os.environ.get("HEALTH_TIMEOUT", "10"))
    # File under the static prefix to fetch; empty means the prefix directory itself (needs an index file)
    health_static_file: str = os.environ.get("HEALTH_STATIC_FILE", "")

    def __post_init__(self):
        """Initialize derived paths."""
        self.data_dir = Path(self.data_dir)
        self.db_path = self.data_dir / "tlsdeploy.db"
        self.staging_dir = self.data_dir / "staging"
        self.log_file = self.data_dir / "tlsdeploy.log"

    def ensure_dirs(self):
        """Create the data directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)


config = Config()
