"""
Deployment orchestration.

Runs the deployment as an explicit state machine:

    Rendering -> Installed -> CertsReady -> ProxyLive -> Verified

Any failing step moves the run to Error. Effects of the steps that already
succeeded stay in place (a running service, issued certificates, a reloaded
proxy); reverting them could cause the outage the run was meant to avoid.
Every run holds the advisory lock for its certificate directory and is
recorded in the run history.
"""

import asyncio
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .certificates import CertificateManager
from .config import config
from .errors import AbortError, DeployError, HealthCheckError
from .health import HealthChecker, HealthResult
from .locking import DeploymentLock
from .models import DeploymentRun, DeploymentTarget, ServiceDefinition, StepRecord
from .proxy import ProxyController
from .renderer import ConfigRenderer
from .supervisor import ServiceSupervisor

logger = logging.getLogger(__name__)


class DeployState(Enum):
    RENDERING = "Rendering"
    INSTALLED = "Installed"
    CERTS_READY = "CertsReady"
    PROXY_LIVE = "ProxyLive"
    VERIFIED = "Verified"
    ERROR = "Error"


@dataclass
class StepResult:
    """Outcome of one state's entry action."""

    state: DeployState
    success: bool
    changed: bool = False
    message: str = ""
    error: Exception = None
    duration_seconds: float = 0.0


@dataclass
class RunResult:
    """Outcome of a whole run."""

    state: DeployState
    steps: list[StepResult] = field(default_factory=list)
    failed_step: DeployState = None
    error: Exception = None
    health: dict[str, HealthResult] = field(default_factory=dict)
    rendered: str = ""
    dry_run: bool = False

    @property
    def exit_code(self) -> int:
        if self.error is None:
            return 0
        return getattr(self.error, "exit_code", 1)

    @property
    def changed(self) -> bool:
        return any(step.changed for step in self.steps)

    def summary(self) -> str:
        if self.error is None:
            return f"Run finished in state {self.state.value}"
        if isinstance(self.error, HealthCheckError):
            return f"Deployed, but health check failed: {self.error}"
        step = self.failed_step.value if self.failed_step else "Startup"
        return f"{step} failed: {self.error}"


def _staging_name(target: DeploymentTarget) -> str:
    key = hashlib.sha256(str(Path(target.cert_dir).resolve()).encode()).hexdigest()[:12]
    return f"site-{key}"


class Orchestrator:
    """Sequences rendering, service, certificates, proxy and health checks."""

    def __init__(
        self,
        target: DeploymentTarget,
        service: ServiceDefinition = None,
        renderer: ConfigRenderer = None,
        supervisor: ServiceSupervisor = None,
        certificates: CertificateManager = None,
        proxy: ProxyController = None,
        health: HealthChecker = None,
        staging_dir: Path = None,
        dry_run: bool = False,
        record_history: bool = True,
    ):
        self.target = target
        self.service = service
        self.abort_event = threading.Event()
        self.renderer = renderer or ConfigRenderer()
        self.supervisor = supervisor or ServiceSupervisor()
        self.certificates = certificates or CertificateManager(target, abort_event=self.abort_event)
        self.certificates.abort_event = self.abort_event
        self.proxy = proxy or ProxyController()
        self.health = health or HealthChecker(static_prefix=target.static_prefix)
        self.staging_dir = Path(staging_dir or config.staging_dir)
        self.dry_run = dry_run
        self.record_history = record_history and not dry_run

        name = _staging_name(target)
        self.staged_path = self.staging_dir / f"{name}.caddy"
        self.interim_path = self.staging_dir / f"{name}.interim.caddy"
        self._certs_changed = False
        self._run_record: DeploymentRun = None

    def abort(self):
        """Cancel the run; domains not yet started are left alone."""
        logger.warning("Abort requested")
        self.abort_event.set()

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    def _start_record(self, kind: str):
        if not self.record_history:
            return
        self._run_record = DeploymentRun.create(
            kind=kind,
            domains=json.dumps(self.target.domains),
            upstream=self.target.upstream,
            state=DeployState.RENDERING.value,
        )

    def _record_step(self, step: StepResult):
        if self._run_record is None:
            return
        StepRecord.create(
            run=self._run_record,
            state=step.state.value,
            success=step.success,
            changed=step.changed,
            message=step.message,
            duration_seconds=step.duration_seconds,
        )

    def _finish_record(self, result: RunResult):
        if self._run_record is None:
            return
        self._run_record.state = result.state.value
        self._run_record.failed_step = result.failed_step.value if result.failed_step else None
        self._run_record.message = result.summary()
        self._run_record.exit_code = result.exit_code
        self._run_record.finished_at = datetime.now()
        self._run_record.save()

    # ------------------------------------------------------------------
    # State entry actions
    # ------------------------------------------------------------------

    async def _render(self, result: RunResult) -> tuple[bool, str]:
        if self.dry_run:
            _, result.rendered = self.renderer.render(self.target)
            return False, "Rendered config (dry run, not written)"

        proxy_config, changed = self.renderer.render_to(self.target, self.staged_path)
        result.rendered = self.staged_path.read_text()
        return changed, f"{len(proxy_config.server_blocks)} site blocks at {self.staged_path}"

    async def _install_service(self, result: RunResult) -> tuple[bool, str]:
        if self.service is None:
            return False, "No service definition given, backend left as is"

        if self.dry_run:
            self.supervisor.check_unprivileged(self.service)
            return False, f"Would install and start {self.service.name}"

        installed = await asyncio.to_thread(self.supervisor.install, self.service)
        started = await asyncio.to_thread(self.supervisor.ensure_running, self.service.name)
        if started:
            return True, f"Service {self.service.name} (re)started"
        if installed:
            return True, f"Service {self.service.name} installed"
        return False, f"Service {self.service.name} unchanged and running"

    async def _ensure_challenge_reachable(self, pending: list[str]):
        """
        Make sure Caddy answers HTTP-01 challenges for the pending domains.

        If the live config is not already the full rendering, install an
        interim one: plaintext blocks for every domain plus TLS blocks for
        every domain whose certificate has not expired yet, renewal due or not.
        """
        if self.proxy.live_bytes() == self.staged_path.read_bytes():
            return

        ready = set(self.certificates.usable(self.target.domains))
        self.renderer.render_to(self.target, self.interim_path, tls_domains=ready)
        logger.info(f"Installing interim proxy config to serve challenges for {', '.join(pending)}")
        await self.proxy.apply(self.interim_path)

    async def _certificates(self, result: RunResult) -> tuple[bool, str]:
        pending = self.certificates.pending(self.target.domains)

        if self.dry_run:
            if not pending:
                return False, "All certificates valid beyond the renewal window"
            return False, f"Would issue certificates for {', '.join(pending)}"

        if pending:
            # Fail on DNS before touching the proxy
            await asyncio.to_thread(self.certificates.check_dns, pending)
            await self._ensure_challenge_reachable(pending)

        bundles = await asyncio.to_thread(self.certificates.issue_or_renew, self.target.domains)
        issued = [d for d, b in bundles.items() if b.issued]
        self._certs_changed = bool(issued)
        if issued:
            return True, f"Issued certificates for {', '.join(issued)}"
        return False, "All certificates valid beyond the renewal window"

    async def _proxy_live(self, result: RunResult) -> tuple[bool, str]:
        if self.dry_run:
            return False, f"Would validate and install into {self.proxy.site_file}"

        reloaded = await self.proxy.apply(self.staged_path, force_reload=self._certs_changed)
        if reloaded:
            return True, "Caddy reloaded with new configuration"
        return False, "Live config unchanged, no reload needed"

    async def _verify(self, result: RunResult) -> tuple[bool, str]:
        if self.dry_run:
            return False, "Would check " + ", ".join(self.target.domains)

        result.health = await self.health.check(self.target.domains)
        failed = [r for r in result.health.values() if not r.ok]
        if failed:
            details = "; ".join(f"{r.domain}: {r.error}" for r in failed)
            raise HealthCheckError(details)
        return False, "All domains healthy"

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _step(self, result: RunResult, state: DeployState, action) -> bool:
        logger.info(f"Entering {state.value}")
        started = time.monotonic()
        try:
            if self.abort_event.is_set():
                raise AbortError(f"Run aborted before {state.value}")
            changed, message = await action(result)
            step = StepResult(state=state, success=True, changed=changed, message=message)
        except DeployError as e:
            step = StepResult(state=state, success=False, message=str(e), error=e)
        except Exception as e:
            logger.exception(f"Unexpected error in {state.value}")
            step = StepResult(
                state=state, success=False, message=f"{type(e).__name__}: {e}", error=e
            )

        step.duration_seconds = time.monotonic() - started
        result.steps.append(step)
        self._record_step(step)

        if step.success:
            result.state = state
            logger.info(f"{state.value}: {step.message}")
            return True

        result.error = step.error
        if isinstance(step.error, HealthCheckError):
            # Reported, not fatal: everything before it is deployed
            logger.warning(f"{state.value}: {step.message}")
            return False

        result.failed_step = state
        result.state = DeployState.ERROR
        logger.error(f"{state.value} failed: {step.message}")
        return False

    async def _run(self, kind: str, plan) -> RunResult:
        result = RunResult(state=DeployState.RENDERING, dry_run=self.dry_run)
        lock = DeploymentLock(self.target.cert_dir)

        if not self.dry_run:
            config.ensure_dirs()
            try:
                lock.acquire()
            except DeployError as e:
                result.state = DeployState.ERROR
                result.error = e
                logger.error(str(e))
                return result

        try:
            self._start_record(kind)
            for state, action in plan:
                if not await self._step(result, state, action):
                    break
            self._finish_record(result)
        finally:
            lock.release()

        logger.info(result.summary())
        return result

    async def deploy(self) -> RunResult:
        """Run the full deployment."""
        return await self._run(
            "deploy",
            [
                (DeployState.RENDERING, self._render),
                (DeployState.INSTALLED, self._install_service),
                (DeployState.CERTS_READY, self._certificates),
                (DeployState.PROXY_LIVE, self._proxy_live),
                (DeployState.VERIFIED, self._verify),
            ],
        )

    async def renew(self) -> RunResult:
        """Renew certificates close to expiry and reload the proxy if any changed."""
        return await self._run(
            "renew",
            [
                (DeployState.RENDERING, self._render),
                (DeployState.CERTS_READY, self._certificates),
                (DeployState.PROXY_LIVE, self._proxy_live),
                (DeployState.VERIFIED, self._verify),
            ],
        )
