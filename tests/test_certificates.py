"""Tests for certificate issuance and renewal."""

import os
import stat
from pathlib import Path

import pytest
import requests
from acme import errors as acme_errors
from acme import messages

from conftest import PUBLIC_IP, FakeAuthority, write_bundle
from tlsdeploy.certificates import (
    AcmeAuthority,
    CertificateManager,
    ChallengeStore,
    RunAborted,
    TransientAuthorityError,
    read_expiry,
)
from tlsdeploy.errors import AbortError, CertificateError, RateLimitError, ValidationError


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def manager(target, authority, resolver, local_ips):
    return CertificateManager(
        target,
        authority=authority,
        resolver=resolver,
        local_addresses=local_ips,
        workers=1,
        backoff_seconds=0,
    )


class TestIssue:
    def test_issues_a_bundle_per_domain(self, manager, authority, target):
        bundles = manager.issue_or_renew(target.domains)

        assert list(bundles) == ["a.example", "b.example"]
        assert authority.calls == ["a.example", "b.example"]
        for domain, bundle in bundles.items():
            assert bundle.issued is True
            assert bundle.certificate_path == target.bundle_dir(domain) / "fullchain.pem"
            assert bundle.private_key_path.exists()
            assert stat.S_IMODE(os.stat(bundle.private_key_path).st_mode) == 0o600
            assert 89 < bundle.days_left() <= 90

    def test_challenge_is_published_under_static_root_and_removed(self, manager, authority, target):
        manager.issue_or_renew(["a.example"])

        assert authority.challenges_seen == ["token-a.example.thumbprint"]
        challenge_dir = ChallengeStore(target.static_path).root
        assert challenge_dir == Path(target.static_path) / ".well-known" / "acme-challenge"
        assert list(challenge_dir.iterdir()) == []

    def test_skips_bundles_far_from_expiry(self, manager, authority, target):
        write_bundle(target.cert_dir, "a.example", days=60)

        bundles = manager.issue_or_renew(target.domains)

        assert authority.calls == ["b.example"]
        assert bundles["a.example"].issued is False
        assert bundles["b.example"].issued is True

    def test_renews_bundles_inside_the_window(self, manager, authority, target):
        old = write_bundle(target.cert_dir, "a.example", days=20)

        bundles = manager.issue_or_renew(["a.example"])

        assert authority.calls == ["a.example"]
        assert (target.bundle_dir("a.example") / "fullchain.pem").read_bytes() != old
        assert bundles["a.example"].days_left() > 80

    def test_repeated_calls_are_noops(self, manager, authority, target):
        manager.issue_or_renew(target.domains)
        manager.issue_or_renew(target.domains)
        assert authority.calls == ["a.example", "b.example"]

    def test_pending(self, manager, target):
        write_bundle(target.cert_dir, "a.example", days=45)
        write_bundle(target.cert_dir, "b.example", days=5)
        assert manager.pending(target.domains) == ["b.example"]

    def test_read_expiry(self, target):
        write_bundle(target.cert_dir, "a.example", days=10)
        expires = read_expiry(target.bundle_dir("a.example") / "fullchain.pem")
        assert expires.tzinfo is not None


class TestDNS:
    def test_foreign_address_blocks_issuance(self, target, authority, local_ips):
        manager = CertificateManager(
            target,
            authority=authority,
            resolver=lambda d: {PUBLIC_IP} if d == "a.example" else {"198.51.100.7"},
            local_addresses=local_ips,
            workers=1,
        )

        with pytest.raises(ValidationError, match="b.example resolves to 198.51.100.7"):
            manager.issue_or_renew(target.domains)
        assert authority.calls == []
        assert not target.bundle_dir("a.example").exists()

    def test_partially_foreign_address_blocks_issuance(self, target, authority, local_ips):
        manager = CertificateManager(
            target,
            authority=authority,
            resolver=lambda d: {PUBLIC_IP, "2001:db8::1"},
            local_addresses=local_ips,
        )
        with pytest.raises(ValidationError):
            manager.issue_or_renew(["a.example"])
        assert authority.calls == []

    def test_unresolvable_domain(self, target, authority, local_ips):
        def resolver(domain):
            raise ValidationError(f"{domain} does not resolve", domain=domain)

        manager = CertificateManager(target, authority=authority, resolver=resolver, local_addresses=local_ips)
        with pytest.raises(ValidationError, match="does not resolve"):
            manager.issue_or_renew(["a.example"])
        assert authority.calls == []


class TestFailures:
    def test_rate_limit_halts_and_leaves_later_domains_unissued(self, target, resolver, local_ips):
        authority = FakeAuthority(failures={"a.example": RateLimitError("too many certificates", "a.example")})
        manager = CertificateManager(
            target, authority=authority, resolver=resolver, local_addresses=local_ips, workers=1
        )

        with pytest.raises(RateLimitError):
            manager.issue_or_renew(target.domains)

        assert authority.calls == ["a.example"]
        assert not (target.bundle_dir("b.example") / "fullchain.pem").exists()

    def test_transient_failures_are_retried(self, target, resolver, local_ips):
        authority = FakeAuthority(
            failures={"a.example": [TransientAuthorityError("reset"), TransientAuthorityError("reset")]}
        )
        manager = CertificateManager(
            target, authority=authority, resolver=resolver, local_addresses=local_ips, backoff_seconds=0
        )

        bundles = manager.issue_or_renew(["a.example"])

        assert authority.calls == ["a.example"] * 3
        assert bundles["a.example"].issued is True

    def test_gives_up_after_three_attempts(self, target, resolver, local_ips):
        authority = FakeAuthority(failures={"a.example": TransientAuthorityError("connection refused")})
        manager = CertificateManager(
            target, authority=authority, resolver=resolver, local_addresses=local_ips, backoff_seconds=0
        )

        with pytest.raises(CertificateError, match="after 3 attempts"):
            manager.issue_or_renew(["a.example"])
        assert authority.calls == ["a.example"] * 3

    def test_validation_errors_are_not_retried(self, target, resolver, local_ips):
        authority = FakeAuthority(failures={"a.example": ValidationError("unauthorized", "a.example")})
        manager = CertificateManager(target, authority=authority, resolver=resolver, local_addresses=local_ips)

        with pytest.raises(ValidationError):
            manager.issue_or_renew(["a.example"])
        assert authority.calls == ["a.example"]

    def test_abort_before_start(self, manager, authority, target):
        manager.abort_event.set()
        with pytest.raises(RunAborted):
            manager.issue_or_renew(target.domains)
        assert authority.calls == []


class TestAcmeErrorMapping:
    @pytest.fixture
    def acme_authority(self, tmp_path):
        return AcmeAuthority(
            directory_url="https://acme.test/directory",
            account_key_dir=tmp_path / "account",
        )

    def _raising(self, exc):
        def issue(domain, key_pem, store):
            raise exc

        return issue

    def test_rate_limited_problem(self, acme_authority, tmp_path, monkeypatch):
        problem = messages.Error(typ="urn:ietf:params:acme:error:rateLimited", detail="too many")
        monkeypatch.setattr(acme_authority, "_issue", self._raising(problem))

        with pytest.raises(RateLimitError, match="too many"):
            acme_authority.issue("a.example", b"", ChallengeStore(str(tmp_path)))

    def test_other_problem_is_validation_error(self, acme_authority, tmp_path, monkeypatch):
        problem = messages.Error(typ="urn:ietf:params:acme:error:unauthorized", detail="no")
        monkeypatch.setattr(acme_authority, "_issue", self._raising(problem))

        with pytest.raises(ValidationError):
            acme_authority.issue("a.example", b"", ChallengeStore(str(tmp_path)))

    def test_connection_errors_are_transient(self, acme_authority, tmp_path, monkeypatch):
        monkeypatch.setattr(
            acme_authority, "_issue", self._raising(requests.exceptions.ConnectionError("reset"))
        )

        with pytest.raises(TransientAuthorityError):
            acme_authority.issue("a.example", b"", ChallengeStore(str(tmp_path)))

    @staticmethod
    def _response(status_code):
        response = requests.Response()
        response.status_code = status_code
        return response

    @pytest.mark.parametrize("status_code", [502, 503])
    def test_gateway_errors_are_transient(self, acme_authority, tmp_path, monkeypatch, status_code):
        failure = acme_errors.ClientError(self._response(status_code))
        monkeypatch.setattr(acme_authority, "_issue", self._raising(failure))

        with pytest.raises(TransientAuthorityError, match=str(status_code)):
            acme_authority.issue("a.example", b"", ChallengeStore(str(tmp_path)))

    def test_client_errors_below_500_are_rejections(self, acme_authority, tmp_path, monkeypatch):
        failure = acme_errors.ClientError(self._response(403))
        monkeypatch.setattr(acme_authority, "_issue", self._raising(failure))

        with pytest.raises(ValidationError, match="HTTP 403"):
            acme_authority.issue("a.example", b"", ChallengeStore(str(tmp_path)))

    def test_invalid_order_is_validation_error(self, acme_authority, tmp_path, monkeypatch):
        problem = messages.Error(typ="urn:ietf:params:acme:error:badCSR", detail="bad key")
        monkeypatch.setattr(acme_authority, "_issue", self._raising(acme_errors.IssuanceError(problem)))

        with pytest.raises(ValidationError, match="did not complete"):
            acme_authority.issue("a.example", b"", ChallengeStore(str(tmp_path)))

    def test_exhausted_polling_is_validation_error(self, acme_authority, tmp_path, monkeypatch):
        monkeypatch.setattr(acme_authority, "_issue", self._raising(acme_errors.PollError(set(), {})))

        with pytest.raises(ValidationError, match="did not complete"):
            acme_authority.issue("a.example", b"", ChallengeStore(str(tmp_path)))

    def test_gateway_errors_are_retried_by_the_manager(self, target, resolver, local_ips, monkeypatch):
        failures = [acme_errors.ClientError(self._response(502))]
        authority = AcmeAuthority(directory_url="https://acme.test/directory", account_key_dir=target.cert_dir)
        fake = FakeAuthority()

        def issue(domain, key_pem, store):
            if failures:
                raise failures.pop()
            return fake.issue(domain, key_pem, store)

        monkeypatch.setattr(authority, "_issue", issue)
        manager = CertificateManager(
            target, authority=authority, resolver=resolver, local_addresses=local_ips, backoff_seconds=0
        )

        bundles = manager.issue_or_renew(["a.example"])

        assert bundles["a.example"].issued is True
        assert fake.calls == ["a.example"]


def test_aborted_run_is_not_an_authority_error():
    aborted = RunAborted("Run aborted before issuing a.example", domain="a.example")
    assert isinstance(aborted, AbortError)
    assert not isinstance(aborted, CertificateError)
    assert aborted.exit_code == 1


def test_challenge_store_rejects_path_tokens(tmp_path):
    store = ChallengeStore(str(tmp_path))
    with pytest.raises(ValidationError):
        store.publish("../escape", "x")
