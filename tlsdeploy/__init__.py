"""
tlsdeploy - Deploy a backend process behind a TLS-terminating reverse proxy.

Renders Caddy configuration, runs the backend as a systemd service, issues
per-domain certificates over ACME and verifies the result over HTTPS.
"""

__version__ = "0.1.0"
