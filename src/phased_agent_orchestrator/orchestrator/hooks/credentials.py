"""Hard-coded credential detection for files produced by earlier phases.

Lines that reference the environment (``os.environ``, ``getenv``,
``process.env``, ...) are treated as safe.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from phased_agent_orchestrator.orchestrator.hooks.base import GateContext
from phased_agent_orchestrator.orchestrator.workflow.models import HookResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CredentialViolation:
    kind: str
    pattern: str
    suggestion: str


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: str
    regex: re.Pattern[str]
    description: str
    suggestion: str
    # Per-line rules honour the safe-pattern exemption; whole-content rules do not.
    per_line: bool = True


_SAFE_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"process\.env\.",
        r"os\.environ",
        r"getenv",
        r"environ\[",
        r"context\.",
        r"\.env\b",
        r"ACCOUNT_SID",
        r"AUTH_TOKEN",
        r"API_KEY",
        r"API_SECRET",
    )
)

_RULES: tuple[_Rule, ...] = (
    _Rule(
        kind="account_sid",
        regex=re.compile(r"AC[a-f0-9]{32}", re.IGNORECASE),
        description="AC[a-f0-9]{32}",
        suggestion="Read the account SID from the environment",
    ),
    _Rule(
        kind="api_key",
        regex=re.compile(r"SK[a-f0-9]{32}", re.IGNORECASE),
        description="SK[a-f0-9]{32}",
        suggestion="Read the API key SID from the environment",
    ),
    _Rule(
        kind="auth_token",
        regex=re.compile(
            r"(authToken|AUTH_TOKEN|auth_token)['\"]?\s*[:=]\s*['\"][a-f0-9]{32}['\"]",
            re.IGNORECASE,
        ),
        description='auth_token = "<32 hex chars>"',
        suggestion="Read the auth token from the environment",
        per_line=False,
    ),
    _Rule(
        kind="api_secret",
        regex=re.compile(
            r"(apiSecret|API_SECRET|api_secret)['\"]?\s*[:=]\s*['\"][a-zA-Z0-9]{32}['\"]",
            re.IGNORECASE,
        ),
        description='api_secret = "<32 chars>"',
        suggestion="Read the API secret from the environment",
        per_line=False,
    ),
    _Rule(
        kind="aws_access_key",
        regex=re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
        description="AKIA[0-9A-Z]{16}",
        suggestion="Use the AWS credential chain instead of literal keys",
    ),
    _Rule(
        kind="private_key",
        regex=re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH |ENCRYPTED )?PRIVATE KEY-----"),
        description="PEM private key block",
        suggestion="Load private keys from a secrets store or a file outside the repository",
        per_line=False,
    ),
)

_SKIP_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"\.env\.(example|sample)$",
        r"\.(md|rst|txt)$",
        r"(^|/)README",
        r"\.(test|spec)\.(ts|js)$",
        r"(^|/)test_[^/]*\.py$",
        r"_test\.py$",
        r"(^|/)(__tests__|tests?|docs)/",
    )
)


def should_skip(path: str) -> bool:
    """Documentation, tests and env examples may legitimately contain sample credentials."""

    normalized = path.replace("\\", "/")
    return any(p.search(normalized) for p in _SKIP_PATTERNS)


def _line_is_safe(line: str) -> bool:
    return any(p.search(line) for p in _SAFE_PATTERNS)


def find_credentials(content: str) -> list[CredentialViolation]:
    violations: list[CredentialViolation] = []
    lines = content.splitlines()
    for rule in _RULES:
        if rule.per_line:
            hit = any(rule.regex.search(line) and not _line_is_safe(line) for line in lines)
        else:
            hit = rule.regex.search(content) is not None
        if hit:
            violations.append(
                CredentialViolation(
                    kind=rule.kind, pattern=rule.description, suggestion=rule.suggestion
                )
            )
    return violations


class CredentialSafetyGate:
    name = "credential-safety"
    description = "Blocks review when files from earlier phases contain hard-coded credentials"

    def execute(self, context: GateContext) -> HookResult:
        root = context.working_directory.resolve()
        findings: list[dict[str, str]] = []
        warnings: list[str] = []
        scanned = 0

        for relative in context.touched_files():
            if should_skip(relative):
                continue
            path = (root / relative).resolve()
            if not path.is_relative_to(root):
                warnings.append(f"Skipped file outside the working directory: {relative}")
                continue
            if not path.is_file():
                continue
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                warnings.append(f"Could not read {relative}: {e}")
                continue
            scanned += 1
            for violation in find_credentials(content):
                findings.append(
                    {
                        "file": relative,
                        "kind": violation.kind,
                        "pattern": violation.pattern,
                        "suggestion": violation.suggestion,
                    }
                )

        data = {"filesScanned": scanned, "violations": findings}
        if findings:
            logger.warning(
                "Hard-coded credentials found",
                extra={"violations": len(findings), "files_scanned": scanned},
            )
            summary = "\n".join(
                f"{f['file']}: hard-coded {f['kind'].replace('_', ' ')} ({f['pattern']}). "
                f"{f['suggestion']}"
                for f in findings
            )
            return HookResult(
                passed=False,
                error=f"Credential safety violation:\n{summary}",
                warnings=tuple(warnings),
                data=data,
            )
        return HookResult(passed=True, warnings=tuple(warnings), data=data)
