"""
Caddy configuration rendering.

Turns a DeploymentTarget into a ProxyConfig and renders it to Caddyfile text.
Each domain gets its own pair of site blocks:

    http://a.example   -> ACME challenges from the static root, else redirect
    https://a.example  -> its own certificate (SNI), static files, reverse proxy

The output is written to a path the caller chooses; installing it into the
live Caddy configuration is the proxy controller's job.
"""

import ipaddress
import logging
import os
import re
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .config import config
from .errors import TemplateError
from .models import DeploymentTarget, ProxyConfig, Route, ServerBlock, TLSRef
from .system import read_if_exists, write_atomic

logger = logging.getLogger(__name__)

templates_dir = Path(__file__).parent / "templates"

ACME_CHALLENGE_PATH = "/.well-known/acme-challenge/*"

_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$", re.IGNORECASE)
_CADDY_SAFE_RE = re.compile(r"^[^\s\"'{}#]+$")


def is_valid_hostname(name: str) -> bool:
    if not name or len(name) > 253 or name.endswith("."):
        return False
    labels = name.split(".")
    if len(labels) < 2:
        return False
    return all(_LABEL_RE.match(label) for label in labels)


def parse_upstream(upstream: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) and validate both halves."""
    if not upstream or ":" not in upstream:
        raise TemplateError(f"Upstream '{upstream}' is not in host:port form")

    if upstream.startswith("["):
        host, sep, port_str = upstream[1:].partition("]:")
        if not sep:
            raise TemplateError(f"Upstream '{upstream}' is not in [host]:port form")
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            raise TemplateError(f"Upstream host '{host}' is not a valid IPv6 address")
    else:
        host, _, port_str = upstream.rpartition(":")
        if not host:
            raise TemplateError(f"Upstream '{upstream}' has no host")
        if host != "localhost" and not is_valid_hostname(host):
            try:
                ipaddress.IPv4Address(host)
            except ValueError:
                raise TemplateError(f"Upstream host '{host}' is not a valid hostname or address")

    if not port_str.isdigit() or not 1 <= int(port_str) <= 65535:
        raise TemplateError(f"Upstream port '{port_str}' must be between 1 and 65535")

    return host, int(port_str)


def validate_target(target: DeploymentTarget):
    """Raise TemplateError when the target cannot be rendered."""
    if not target.domains:
        raise TemplateError("At least one domain is required")

    seen = set()
    for domain in target.domains:
        if not is_valid_hostname(domain):
            raise TemplateError(f"'{domain}' is not a valid hostname")
        if domain.lower() in seen:
            raise TemplateError(f"Domain '{domain}' is listed more than once")
        seen.add(domain.lower())

    parse_upstream(target.upstream)

    if not target.static_path:
        raise TemplateError("A static file path is required")
    if not target.cert_dir:
        raise TemplateError("A certificate directory is required")

    prefix = target.static_prefix
    if not prefix.startswith("/") or prefix == "/" or not _CADDY_SAFE_RE.match(prefix):
        raise TemplateError(f"Static prefix '{prefix}' must be a path like /static")


def caddy_quote(value: str) -> str:
    """Quote a Caddyfile token if it contains characters Caddy would split on."""
    value = str(value)
    if _CADDY_SAFE_RE.match(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class ConfigRenderer:
    """Renders DeploymentTargets to Caddyfile text."""

    def __init__(self, http_port: int = None, https_port: int = None):
        self.http_port = http_port or config.http_port
        self.https_port = https_port or config.https_port
        self._env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self._env.filters["caddy_quote"] = caddy_quote

    def _redirect_target(self) -> str:
        if self.https_port == 443:
            return "https://{host}{uri}"
        return f"https://{{host}}:{self.https_port}{{uri}}"

    def build(self, target: DeploymentTarget, tls_domains: set[str] = None) -> ProxyConfig:
        """
        Build the ProxyConfig for a target.

        tls_domains limits which domains get a TLS block; None means all of
        them. An empty set yields only the plaintext blocks, which is enough
        to answer HTTP-01 challenges before any certificate exists.
        """
        validate_target(target)

        static_root = os.path.abspath(target.static_path)
        prefix = target.static_prefix.rstrip("/")
        blocks = []

        for domain in target.domains:
            blocks.append(
                ServerBlock(
                    listen_port=self.http_port,
                    domains=[domain],
                    routes=[
                        Route(kind="acme_challenge", target=static_root, path=ACME_CHALLENGE_PATH),
                        Route(kind="redirect", target=self._redirect_target()),
                    ],
                )
            )

        for domain in target.domains:
            if tls_domains is not None and domain not in tls_domains:
                continue
            bundle_dir = Path(os.path.abspath(target.cert_dir)) / domain
            blocks.append(
                ServerBlock(
                    listen_port=self.https_port,
                    domains=[domain],
                    tls=TLSRef(
                        certificate_path=str(bundle_dir / "fullchain.pem"),
                        private_key_path=str(bundle_dir / "privkey.pem"),
                    ),
                    routes=[
                        Route(kind="static", target=static_root, path=f"{prefix}/*"),
                        Route(kind="proxy", target=target.upstream),
                    ],
                )
            )

        return ProxyConfig(server_blocks=blocks)

    def to_text(self, proxy_config: ProxyConfig) -> str:
        template = self._env.get_template("Caddyfile.j2")
        return template.render(config=proxy_config, site_file=config.caddy_site_file)

    def render(self, target: DeploymentTarget, tls_domains: set[str] = None) -> tuple[ProxyConfig, str]:
        proxy_config = self.build(target, tls_domains=tls_domains)
        return proxy_config, self.to_text(proxy_config)

    def render_to(
        self, target: DeploymentTarget, path: Path, tls_domains: set[str] = None
    ) -> tuple[ProxyConfig, bool]:
        """
        Render a target and write it to ``path``.

        Returns:
            Tuple of (proxy_config, changed) where changed is False when the
            file already held byte-identical content.
        """
        proxy_config, text = self.render(target, tls_domains=tls_domains)
        data = text.encode("utf-8")

        if read_if_exists(path) == data:
            logger.info(f"Rendered config at {path} is unchanged")
            return proxy_config, False

        write_atomic(path, data)
        logger.info(
            f"Rendered {len(proxy_config.server_blocks)} site blocks for "
            f"{', '.join(target.domains)} to {path}"
        )
        return proxy_config, True
