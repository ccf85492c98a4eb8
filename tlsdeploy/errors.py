"""Error taxonomy for deployment runs.

Every error carries the process exit code the CLI reports for it.
"""


class DeployError(Exception):
    """Base class for all deployment failures."""

    exit_code = 1
    retryable = False


class TemplateError(DeployError):
    """Deployment target has the wrong shape (domains, upstream)."""


class SupervisionError(DeployError):
    """The backend service could not be installed, started or stopped."""


class CertificateError(DeployError):
    """Certificate authority rejected or throttled a request."""

    exit_code = 2
    # Not retried within a run, safe to retry on a later invocation
    retryable = True

    def __init__(self, message: str, domain: str = None):
        super().__init__(message)
        self.domain = domain


class ValidationError(CertificateError):
    """Domain failed local DNS checks or authority validation."""


class RateLimitError(CertificateError):
    """Certificate authority signalled throttling."""


class ProxyConfigError(DeployError):
    """Proxy configuration failed validation or could not be reloaded."""

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics


class HealthCheckError(DeployError):
    """One or more domains failed the post-deployment check. Non-fatal."""

    exit_code = 3


class LockError(DeployError):
    """Another run already holds the deployment lock."""


class AbortError(DeployError):
    """The caller cancelled the run."""
