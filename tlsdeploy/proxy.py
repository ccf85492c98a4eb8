"""
Caddy reverse proxy control.

Validates rendered configuration with Caddy's own checker, installs it into
the site file imported by the main Caddyfile and reloads Caddy. The main
Caddyfile should include:
    import /etc/caddy/tlsdeploy.conf

A controller only installs or reloads bytes it has validated itself. Caddy
applies a reload atomically, so a rejected reload leaves the old config
serving; the previous site file is put back so disk and memory agree.
"""

import asyncio
import hashlib
import logging
import subprocess
from pathlib import Path
from typing import Callable

import httpx

from .config import config
from .errors import ProxyConfigError
from .system import output_of, read_if_exists, run_command, write_atomic

logger = logging.getLogger(__name__)


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ProxyController:
    """Validates, installs and reloads the managed Caddy site file."""

    def __init__(
        self,
        runner: Callable = run_command,
        site_file: str = None,
        caddyfile: str = None,
        caddy_bin: str = None,
        admin_url: str = None,
        use_sudo: bool = None,
        transport: httpx.BaseTransport = None,
    ):
        self._run = runner
        self.site_file = Path(site_file or config.caddy_site_file)
        self.caddyfile = Path(caddyfile or config.caddyfile)
        self.caddy_bin = caddy_bin or config.caddy_bin
        self.admin_url = admin_url or config.caddy_admin_url
        self.use_sudo = config.use_sudo if use_sudo is None else use_sudo
        self._transport = transport
        self._validated: set[str] = set()
        self._previous: bytes = None
        self.reloads = 0

    def live_bytes(self) -> bytes | None:
        return read_if_exists(self.site_file)

    def is_validated(self, data: bytes) -> bool:
        return _digest(data) in self._validated

    async def validate(self, path: Path) -> tuple[bool, str]:
        """
        Check a Caddyfile with ``caddy validate``.

        Returns:
            Tuple of (valid, diagnostics). On failure diagnostics is Caddy's
            output verbatim.
        """
        data = Path(path).read_bytes()
        argv = [self.caddy_bin, "validate", "--adapter", "caddyfile", "--config", str(path)]

        try:
            result = await asyncio.to_thread(
                self._run, argv, timeout=config.command_timeout, sudo=False
            )
        except FileNotFoundError:
            return False, f"Caddy binary '{self.caddy_bin}' not found"
        except subprocess.TimeoutExpired:
            return False, "caddy validate timed out"

        diagnostics = output_of(result)
        if result.returncode != 0:
            logger.error(f"Caddy rejected {path}:\n{diagnostics}")
            return False, diagnostics

        self._validated.add(_digest(data))
        logger.info(f"Caddy config {path} is valid")
        return True, diagnostics

    def install(self, path: Path) -> bool:
        """
        Copy a validated config over the live site file.

        Returns False when the live file is already byte-identical.
        """
        data = Path(path).read_bytes()
        if not self.is_validated(data):
            raise ProxyConfigError(f"Refusing to install {path}: not validated in this run")

        current = self.live_bytes()
        if current == data:
            logger.info(f"Live config {self.site_file} is unchanged")
            return False

        self._previous = current
        try:
            if current is not None:
                write_atomic(self.site_file.with_name(self.site_file.name + ".prev"), current)
            write_atomic(self.site_file, data)
        except PermissionError as e:
            raise ProxyConfigError(f"Permission denied writing {self.site_file}: {e}")

        logger.info(f"Installed {path} as {self.site_file}")
        return True

    def restore_previous(self):
        """Put back the site file that was live before the last install."""
        if self._previous is None:
            self.site_file.unlink(missing_ok=True)
            logger.warning(f"Removed unreloadable config at {self.site_file}")
        else:
            write_atomic(self.site_file, self._previous)
            logger.warning(f"Restored previous config at {self.site_file}")

    async def reload(self) -> tuple[bool, str]:
        """
        Reload Caddy with the live configuration.

        Tries systemctl first, then ``caddy reload``, then the admin API.
        Never runs against bytes this controller has not validated.
        """
        live = self.live_bytes()
        if live is None or not self.is_validated(live):
            raise ProxyConfigError(
                f"Refusing to reload: {self.site_file} was not validated in this run"
            )

        try:
            result = await asyncio.to_thread(
                self._run,
                ["systemctl", "reload", "caddy"],
                timeout=config.command_timeout,
                sudo=self.use_sudo,
            )
            if result.returncode == 0:
                logger.info("Caddy reloaded successfully via systemctl")
                self.reloads += 1
                return True, "Caddy reloaded"

            result = await asyncio.to_thread(
                self._run,
                [self.caddy_bin, "reload", "--adapter", "caddyfile", "--config", str(self.caddyfile)],
                timeout=config.command_timeout,
                sudo=False,
            )
            if result.returncode == 0:
                logger.info("Caddy reloaded successfully via caddy reload")
                self.reloads += 1
                return True, "Caddy reloaded"

            error = f"Caddy reload failed: {output_of(result)}"
            logger.error(error)
            return False, error

        except subprocess.TimeoutExpired:
            error = "Caddy reload timed out"
            logger.error(error)
            return False, error
        except FileNotFoundError:
            # systemctl not available, try admin API
            return await self.reload_via_api()

    async def reload_via_api(self) -> tuple[bool, str]:
        """
        Reload Caddy via the admin API.

        Posts the main Caddyfile, which imports the managed site file.
        """
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self.admin_url}/load",
                    headers={"Content-Type": "text/caddyfile"},
                    content=self.caddyfile.read_bytes(),
                    timeout=float(config.command_timeout),
                )

            if response.status_code == 200:
                logger.info("Caddy reloaded via admin API")
                self.reloads += 1
                return True, "Caddy reloaded via admin API"

            error = f"Caddy API reload failed: {response.text}"
            logger.error(error)
            return False, error

        except httpx.ConnectError:
            error = f"Could not connect to Caddy admin API at {self.admin_url}"
            logger.error(error)
            return False, error
        except FileNotFoundError:
            error = f"Main Caddyfile {self.caddyfile} not found"
            logger.error(error)
            return False, error

    async def apply(self, path: Path, force_reload: bool = False) -> bool:
        """
        Validate, install and reload in that order.

        Reloads when the live file changed or force_reload is set (new
        certificates behind unchanged config). Returns True if Caddy reloaded.
        """
        valid, diagnostics = await self.validate(path)
        if not valid:
            raise ProxyConfigError(f"Caddy rejected {path}", diagnostics=diagnostics)

        changed = self.install(path)
        if not changed and not force_reload:
            return False

        ok, message = await self.reload()
        if not ok:
            if changed:
                self.restore_previous()
            raise ProxyConfigError(message, diagnostics=message)
        return True
