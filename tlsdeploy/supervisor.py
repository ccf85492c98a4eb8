"""
Backend service supervision via systemd.

Installs a service definition as a systemd unit with restart-on-crash, plus an
environment file holding the backend's variables (secrets included) with
0600 permissions. Installed definitions are kept in the ServiceRecord table so
re-installing an identical definition is a no-op and a changed one is flagged
for restart.

The unit never runs as the superuser, whatever the caller asks for.
"""

import grp
import json
import logging
import os
import pwd
import re
import shlex
import shutil
import subprocess
from enum import Enum
from pathlib import Path
from typing import Callable

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .config import config
from .errors import SupervisionError
from .models import ServiceDefinition, ServiceRecord
from .system import output_of, read_if_exists, run_command, write_atomic

logger = logging.getLogger(__name__)

templates_dir = Path(__file__).parent / "templates"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]*$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ServiceState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


def _escape_env_value(value: str) -> str:
    if "\n" in value or "\r" in value:
        raise SupervisionError("Environment values may not contain newlines")
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class ServiceSupervisor:
    """Manages backend services as systemd units."""

    def __init__(
        self,
        runner: Callable = run_command,
        unit_dir: str = None,
        env_dir: str = None,
        use_sudo: bool = None,
        user_lookup: Callable = pwd.getpwnam,
        group_lookup: Callable = grp.getgrnam,
    ):
        self._run = runner
        self.unit_dir = Path(unit_dir or config.unit_dir)
        self.env_dir = Path(env_dir or config.env_dir)
        self.use_sudo = config.use_sudo if use_sudo is None else use_sudo
        self._getpwnam = user_lookup
        self._getgrnam = group_lookup
        self._env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def unit_path(self, name: str) -> Path:
        return self.unit_dir / f"{name}.service"

    def env_path(self, name: str) -> Path:
        return self.env_dir / f"{name}.env"

    # ------------------------------------------------------------------
    # Definition checks and rendering
    # ------------------------------------------------------------------

    def check_unprivileged(self, service: ServiceDefinition):
        """Refuse any definition that would run as the superuser."""
        if not service.user or not service.group:
            raise SupervisionError(f"Service {service.name} needs an explicit user and group")
        if service.user == "root" or service.group == "root":
            raise SupervisionError(f"Service {service.name} may not run as root")

        try:
            uid = self._getpwnam(service.user).pw_uid
        except KeyError:
            raise SupervisionError(f"User '{service.user}' does not exist")
        try:
            gid = self._getgrnam(service.group).gr_gid
        except KeyError:
            raise SupervisionError(f"Group '{service.group}' does not exist")

        if uid == 0 or gid == 0:
            raise SupervisionError(
                f"Service {service.name} resolves to a privileged account "
                f"({service.user}:{service.group}), refusing to install"
            )

    def _exec_start(self, service: ServiceDefinition) -> str:
        try:
            argv = shlex.split(service.command)
        except ValueError as e:
            raise SupervisionError(f"Cannot parse command for {service.name}: {e}")
        if not argv:
            raise SupervisionError(f"Service {service.name} has an empty command")

        # systemd wants an absolute executable path
        executable = argv[0]
        if not os.path.isabs(executable):
            if "/" in executable:
                executable = os.path.normpath(os.path.join(service.working_directory, executable))
            else:
                executable = shutil.which(executable) or executable
        return shlex.join([executable, *argv[1:]])

    def render_unit(self, service: ServiceDefinition) -> str:
        template = self._env.get_template("service.unit.j2")
        return template.render(
            service=service,
            env_file=str(self.env_path(service.name)),
            exec_start=self._exec_start(service),
            restart_sec=config.restart_delay,
        )

    def render_env(self, service: ServiceDefinition) -> str:
        lines = ["# Managed by tlsdeploy - do not edit manually"]
        for key in sorted(service.environment):
            if not _ENV_KEY_RE.match(key):
                raise SupervisionError(f"Invalid environment variable name '{key}'")
            lines.append(f"{key}={_escape_env_value(str(service.environment[key]))}")
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # systemctl
    # ------------------------------------------------------------------

    def _systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        argv = ["systemctl", *args]
        try:
            result = self._run(argv, timeout=config.command_timeout, sudo=self.use_sudo)
        except FileNotFoundError:
            raise SupervisionError("systemctl not found, is systemd available?")
        except subprocess.TimeoutExpired:
            raise SupervisionError(f"'{' '.join(argv)}' timed out")

        if check and result.returncode != 0:
            raise SupervisionError(f"'{' '.join(argv)}' failed: {output_of(result)}")
        return result

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def install(self, service: ServiceDefinition) -> bool:
        """
        Install or update a service definition.

        Returns True when the unit or environment changed. A changed definition
        is flagged so the next ensure_running() restarts it.
        """
        if not _NAME_RE.match(service.name or ""):
            raise SupervisionError(f"Invalid service name '{service.name}'")
        self.check_unprivileged(service)

        unit_text = self.render_unit(service).encode("utf-8")
        env_text = self.render_env(service).encode("utf-8")
        digest = service.digest()

        record = ServiceRecord.get_or_none(ServiceRecord.name == service.name)
        unit_path = self.unit_path(service.name)
        env_path = self.env_path(service.name)

        if (
            record is not None
            and record.digest == digest
            and read_if_exists(unit_path) == unit_text
            and read_if_exists(env_path) == env_text
        ):
            logger.info(f"Service {service.name} is already installed and unchanged")
            return False

        try:
            write_atomic(env_path, env_text, mode=0o600)
            write_atomic(unit_path, unit_text, mode=0o644)
        except PermissionError as e:
            raise SupervisionError(f"Permission denied writing unit for {service.name}: {e}")

        self._systemctl("daemon-reload")
        self._systemctl("enable", f"{service.name}.service")

        if record is None:
            ServiceRecord.create(
                name=service.name,
                definition=json.dumps(service.to_dict(), sort_keys=True),
                digest=digest,
                needs_restart=True,
            )
            logger.info(f"Installed service {service.name}")
        else:
            record.definition = json.dumps(service.to_dict(), sort_keys=True)
            record.digest = digest
            record.needs_restart = True
            record.save()
            logger.info(f"Updated service {service.name}, restart required")

        return True

    def _get_record(self, name: str) -> ServiceRecord:
        record = ServiceRecord.get_or_none(ServiceRecord.name == name)
        if record is None:
            raise SupervisionError(f"Service '{name}' is not installed")
        return record

    def preflight(self, service: ServiceDefinition):
        """Check that the working directory exists and the command can run."""
        if not os.path.isdir(service.working_directory):
            raise SupervisionError(
                f"Working directory {service.working_directory} does not exist"
            )

        executable = shlex.split(self._exec_start(service))[0]
        if not os.path.isfile(executable) or not os.access(executable, os.X_OK):
            raise SupervisionError(f"Command '{executable}' is not executable")

    def start(self, name: str):
        record = self._get_record(name)
        self.preflight(record.get_definition())
        self._systemctl("start", f"{name}.service")
        record.needs_restart = False
        record.save()
        logger.info(f"Started service {name}")

    def restart(self, name: str):
        record = self._get_record(name)
        self.preflight(record.get_definition())
        self._systemctl("restart", f"{name}.service")
        record.needs_restart = False
        record.save()
        logger.info(f"Restarted service {name}")

    def stop(self, name: str):
        self._get_record(name)
        self._systemctl("stop", f"{name}.service")
        logger.info(f"Stopped service {name}")

    def status(self, name: str) -> ServiceState:
        result = self._systemctl("is-active", f"{name}.service", check=False)
        state = (result.stdout or "").strip()
        if state in ("active", "activating", "reloading"):
            return ServiceState.RUNNING
        if state == "failed":
            return ServiceState.FAILED
        return ServiceState.STOPPED

    def ensure_running(self, name: str) -> bool:
        """
        Bring a service to the running state with the latest definition.

        Returns True if the service was started or restarted.
        """
        record = self._get_record(name)
        if record.needs_restart:
            if self.status(name) == ServiceState.RUNNING:
                self.restart(name)
            else:
                self.start(name)
            return True

        if self.status(name) != ServiceState.RUNNING:
            self.start(name)
            return True

        logger.info(f"Service {name} is running")
        return False
