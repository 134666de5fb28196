"""Secret detection rules for regex-based scanning of CI output."""

import re
from dataclasses import dataclass

from ci_leak_scanner.models import Confidence


@dataclass(frozen=True)
class SecretPattern:
    """A secret detection rule."""
    name: str
    confidence: Confidence
    pattern: re.Pattern
    description: str
    keywords: tuple[str, ...]  # cheap substring prefilter, empty = always run

    def extract(self, match: re.Match) -> str:
        """The secret itself: the first capture group when the rule has one."""
        if self.pattern.groups:
            return match.group(1) or match.group(0)
        return match.group(0)


def _pat(name: str, confidence: str, regex: str, desc: str,
         keywords: tuple[str, ...] = (), flags: int = 0) -> SecretPattern:
    return SecretPattern(
        name=name,
        confidence=Confidence(confidence),
        pattern=re.compile(regex, flags),
        description=desc,
        keywords=tuple(k.lower() for k in keywords),
    )


PATTERNS: list[SecretPattern] = [
    # --- Cloud providers ---
    _pat(
        "aws-access-key-id",
        "high",
        r"""\b((?:A3T[A-Z0-9]|AKIA|ASIA|ABIA|ACCA)[A-Z0-9]{16})\b""",
        "AWS access key ID",
        ("akia", "asia", "abia", "acca", "a3t"),
    ),
    _pat(
        "aws-secret-access-key",
        "medium",
        r"""aws_?secret_?access_?key["']?\s*[:=]\s*["']?([A-Za-z0-9/+=]{40})(?![A-Za-z0-9/+=])""",
        "AWS secret access key assignment",
        ("aws",),
        re.IGNORECASE,
    ),
    _pat(
        "google-api-key",
        "high",
        r"""\b(AIza[0-9A-Za-z\-_]{35})""",
        "Google API key",
        ("aiza",),
    ),
    _pat(
        "gcp-service-account",
        "high",
        r"""("type"\s*:\s*"service_account")""",
        "GCP service account JSON key file",
        ("service_account",),
    ),
    _pat(
        "azure-storage-account-key",
        "high",
        r"""AccountKey=([A-Za-z0-9+/]{86}==)""",
        "Azure storage account key in a connection string",
        ("accountkey",),
    ),

    # --- Source code platforms ---
    _pat(
        "github-pat",
        "high",
        r"""\b(ghp_[0-9a-zA-Z]{36})\b""",
        "GitHub personal access token",
        ("ghp_",),
    ),
    _pat(
        "github-fine-grained-pat",
        "high",
        r"""\b(github_pat_[0-9a-zA-Z_]{82})\b""",
        "GitHub fine-grained personal access token",
        ("github_pat_",),
    ),
    _pat(
        "github-app-token",
        "high",
        r"""\b((?:ghu|ghs|gho|ghr)_[0-9a-zA-Z]{36})\b""",
        "GitHub app, OAuth or refresh token",
        ("ghu_", "ghs_", "gho_", "ghr_"),
    ),
    _pat(
        "gitlab-pat",
        "high",
        r"""\b(glpat-[0-9a-zA-Z_\-]{20,})""",
        "GitLab personal access token",
        ("glpat-",),
    ),
    _pat(
        "gitlab-runner-token",
        "high",
        r"""\b(glrt-[0-9a-zA-Z_\-]{20,})""",
        "GitLab runner authentication token",
        ("glrt-",),
    ),
    _pat(
        "gitlab-pipeline-trigger-token",
        "high",
        r"""\b(glptt-[0-9a-f]{40})\b""",
        "GitLab pipeline trigger token",
        ("glptt-",),
    ),
    _pat(
        "gitlab-deploy-token",
        "high",
        r"""\b(gldt-[0-9a-zA-Z_\-]{20,})""",
        "GitLab deploy token",
        ("gldt-",),
    ),

    # --- SaaS ---
    _pat(
        "slack-token",
        "high",
        r"""\b(xox[baprs]-[0-9a-zA-Z-]{10,72})\b""",
        "Slack bot, user or app token",
        ("xox",),
    ),
    _pat(
        "slack-webhook-url",
        "high",
        r"""(https://hooks\.slack\.com/services/[A-Za-z0-9+/]{40,50})""",
        "Slack incoming webhook URL",
        ("hooks.slack.com",),
    ),
    _pat(
        "stripe-secret-key",
        "high",
        r"""\b((?:sk|rk)_live_[0-9a-zA-Z]{16,99})\b""",
        "Stripe live secret or restricted key",
        ("_live_",),
    ),
    _pat(
        "sendgrid-api-key",
        "high",
        r"""\b(SG\.[a-zA-Z0-9_\-]{22}\.[a-zA-Z0-9_\-]{43})\b""",
        "SendGrid API key",
        ("sg.",),
    ),
    _pat(
        "twilio-api-key",
        "medium",
        r"""\b(SK[0-9a-fA-F]{32})\b""",
        "Twilio API key",
        ("sk",),
    ),
    _pat(
        "npm-access-token",
        "high",
        r"""\b(npm_[a-zA-Z0-9]{36})\b""",
        "npm access token",
        ("npm_",),
    ),
    _pat(
        "pypi-upload-token",
        "high",
        r"""\b(pypi-AgEIcHlwaS5vcmc[A-Za-z0-9\-_]{50,})""",
        "PyPI upload token",
        ("pypi-",),
    ),
    _pat(
        "openai-api-key",
        "high",
        r"""\b(sk-(?:proj-)?[a-zA-Z0-9_\-]{20,}T3BlbkFJ[a-zA-Z0-9_\-]{20,})""",
        "OpenAI API key",
        ("t3blbkfj",),
    ),
    _pat(
        "anthropic-api-key",
        "high",
        r"""\b(sk-ant-(?:api|admin)\d{2}-[a-zA-Z0-9_\-]{80,120})""",
        "Anthropic API key",
        ("sk-ant-",),
    ),
    _pat(
        "hashicorp-vault-token",
        "high",
        r"""\b(hvs\.[A-Za-z0-9_\-]{90,120})""",
        "HashiCorp Vault service token",
        ("hvs.",),
    ),

    # --- Keys and structured credentials ---
    _pat(
        "private-key",
        "high",
        r"""(-----BEGIN[ A-Z0-9_-]{0,100}PRIVATE KEY(?: BLOCK)?-----)""",
        "PEM encoded private key",
        ("private key",),
    ),
    _pat(
        "jwt",
        "medium",
        r"""\b(eyJ[A-Za-z0-9_-]{10,}\.eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,})""",
        "JSON Web Token",
        ("eyj",),
    ),
    _pat(
        "database-connection-string",
        "medium",
        r"""((?:postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|amqps?|mssql)://[^\s:@/'"]+:[^\s'"]+@[^\s/'"]+)""",
        "Database connection string with embedded password",
        ("://",),
        re.IGNORECASE,
    ),
    _pat(
        "docker-config-auth",
        "medium",
        r""""auth"\s*:\s*"([A-Za-z0-9+/]{20,}={0,2})\"""",
        "Registry credential in a Docker config.json",
        ('"auth"',),
    ),
    _pat(
        "basic-auth-url",
        "low",
        r"""(https?://[^\s:@/'"]+:[^\s@/'"]{3,}@[^\s/'"]+)""",
        "HTTP URL with embedded credentials",
        ("://",),
        re.IGNORECASE,
    ),
    _pat(
        "generic-secret-assignment",
        "low",
        r"""(?:password|passwd|secret|api[_-]?key|access[_-]?token)["']?\s*[:=]\s*["']?([^\s"'$]{8,})""",
        "Possible hardcoded password or secret",
        ("pass", "secret", "key", "token"),
        re.IGNORECASE,
    ),
]


def load_rules(confidence_filter: frozenset[Confidence] | set[Confidence] | None = None) -> list[SecretPattern]:
    """Rules whose confidence is in ``confidence_filter``; all rules when the filter is empty."""
    if not confidence_filter:
        return list(PATTERNS)
    return [rule for rule in PATTERNS if rule.confidence in confidence_filter]
