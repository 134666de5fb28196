"""Regex detector with optional live verification of matched credentials."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

import httpx

from ci_leak_scanner.errors import DetectorInitError, DetectorTimeout
from ci_leak_scanner.models import Confidence, RuleMatch, Verification
from ci_leak_scanner.scanners.patterns import SecretPattern, load_rules

logger = logging.getLogger(__name__)

VERIFY_TIMEOUT = 10.0

# Deadline is re-checked after this many matches within one rule.
_DEADLINE_CHECK_EVERY = 64


@dataclass(frozen=True)
class LivenessCheck:
    """An authenticated request that succeeds only with a live credential."""
    method: str
    url: str
    scheme: str = "bearer"  # bearer, token, private-token or basic


_GITHUB_CHECK = LivenessCheck("GET", "https://api.github.com/user", "token")

LIVENESS_CHECKS: dict[str, LivenessCheck] = {
    "github-pat": _GITHUB_CHECK,
    "github-fine-grained-pat": _GITHUB_CHECK,
    "github-app-token": _GITHUB_CHECK,
    "gitlab-pat": LivenessCheck("GET", "https://gitlab.com/api/v4/personal_access_tokens/self", "private-token"),
    "slack-token": LivenessCheck("POST", "https://slack.com/api/auth.test"),
    "stripe-secret-key": LivenessCheck("GET", "https://api.stripe.com/v1/balance", "basic"),
    "sendgrid-api-key": LivenessCheck("GET", "https://api.sendgrid.com/v3/scopes"),
    "npm-access-token": LivenessCheck("GET", "https://registry.npmjs.org/-/whoami"),
}


class Verifier:
    """Actively tests a matched credential against its origin service."""

    def __init__(self, client: httpx.Client | None = None, checks: dict[str, LivenessCheck] | None = None):
        self._client = client
        self._checks = LIVENESS_CHECKS if checks is None else checks
        self._lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(timeout=VERIFY_TIMEOUT, follow_redirects=False)
            return self._client

    def verify(self, rule: str, secret: str) -> Verification | None:
        """Return the verification status, or None when the service rejected the credential.

        Rules without a liveness check, and checks that fail for any other reason, are ``unverified``.
        """
        check = self._checks.get(rule)
        if check is None:
            return Verification.UNVERIFIED

        try:
            resp = self.client.request(check.method, check.url, **_credentials(check, secret))
        except httpx.HTTPError as exc:
            logger.debug("Verification request failed for rule %s: %s", rule, exc)
            return Verification.UNVERIFIED

        if resp.status_code in (401, 403):
            return None
        if resp.status_code != 200:
            return Verification.UNVERIFIED
        # Slack answers 200 with {"ok": false} for revoked tokens.
        if "json" in resp.headers.get("content-type", ""):
            try:
                body = resp.json()
            except ValueError:
                return Verification.UNVERIFIED
            if isinstance(body, dict) and body.get("ok") is False:
                return None
        return Verification.VERIFIED

    def close(self) -> None:
        """Close the HTTP client; a later verification opens a new one."""
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


def _credentials(check: LivenessCheck, secret: str) -> dict:
    if check.scheme == "basic":
        return {"auth": (secret, "")}
    if check.scheme == "token":
        return {"headers": {"Authorization": f"token {secret}"}}
    if check.scheme == "private-token":
        return {"headers": {"PRIVATE-TOKEN": secret}}
    return {"headers": {"Authorization": f"Bearer {secret}"}}


class Detector:
    """Scans one in-memory buffer at a time and returns rule matches.

    Stateless after construction: the rule list is fixed when the detector is built,
    so a single instance is shared by every worker thread.
    """

    def __init__(
        self,
        confidence_filter: frozenset[Confidence] | None = None,
        verifier: Verifier | None = None,
        rules: list[SecretPattern] | None = None,
    ):
        self.rules = rules if rules is not None else load_rules(confidence_filter)
        if not self.rules:
            raise DetectorInitError(
                f"No detection rules left after applying confidence filter {sorted(c.value for c in confidence_filter or ())}"
            )
        self._verifier = verifier or Verifier()
        logger.debug("Loaded %d detection rules", len(self.rules))

    def detect(self, buf: bytes, verify: bool = False, timeout: float | None = None) -> list[RuleMatch]:
        """Return the matches in ``buf`` in rule order, then position order.

        Raises:
            DetectorTimeout: ``timeout`` seconds elapsed; no partial results are returned.
        """
        if not buf:
            return []

        deadline = time.monotonic() + timeout if timeout else None
        text = buf.decode("utf-8", errors="replace")
        lowered = text.lower()

        matches: list[RuleMatch] = []
        seen: set[tuple[str, str]] = set()

        for rule in self.rules:
            _check_deadline(deadline)
            if rule.keywords and not any(keyword in lowered for keyword in rule.keywords):
                continue

            for count, match in enumerate(rule.pattern.finditer(text), start=1):
                if count % _DEADLINE_CHECK_EVERY == 0:
                    _check_deadline(deadline)

                secret = rule.extract(match)
                key = (rule.name, secret)
                if key in seen:
                    continue
                seen.add(key)

                verification = Verification.UNVERIFIED
                if verify:
                    status = self._verifier.verify(rule.name, secret)
                    if status is None:
                        logger.debug("Suppressed rejected credential for rule %s", rule.name)
                        continue
                    verification = status

                matches.append(RuleMatch(
                    rule=rule.name,
                    confidence=rule.confidence,
                    text=secret,
                    verification=verification,
                ))

        _check_deadline(deadline)
        return matches

    def close(self) -> None:
        self._verifier.close()


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise DetectorTimeout("Detector timeout")
