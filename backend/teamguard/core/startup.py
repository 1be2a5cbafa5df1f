"""Startup validation.

Validates secrets and security-relevant configuration before the
application starts serving requests.

Validation levels:
- STRICT: any critical failure blocks startup (production, staging)
- WARN: log failures and continue (development)
- SKIP: no validation (tests)
"""

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum

from teamguard.config import Settings, get_settings
from teamguard.core.logging import get_logger

logger = get_logger(__name__)

# 32 bytes = 256 bits
MIN_SECRET_LENGTH = 32
MIN_ENTROPY_SCORE = 0.5

PLACEHOLDER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^your[_-]",
        r"[_-]here$",
        r"^change[_-]?this",
        r"^replace[_-]?me",
        r"^secret$",
        r"^password$",
        r"^test[_-]?secret",
        r"^dev[_-]?secret",
        r"^example",
        r"^placeholder",
        r"^default",
        r"^sample",
        r"super[_-]?secret",
        r"jwt[_-]?secret[_-]?key",
        r"your.*secret.*key",
        r"change.*before.*production",
        r"change-in-production",
    )
]

BLOCKED_VALUES = {
    "your_super_secret_jwt_key_here",
    "secret",
    "password",
    "jwt_secret",
    "change_me",
    "replace_me",
    "your_secret_key",
    "my_secret_key",
    "development_secret",
    "test_secret",
    "supersecret",
    "mysecretkey",
}

_SEQUENTIAL = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"


class ValidationLevel(str, Enum):
    """Validation strictness levels."""
    STRICT = "strict"  # Fail if any check fails
    WARN = "warn"      # Log warnings, continue
    SKIP = "skip"      # Skip all validation


@dataclass
class ValidationResult:
    """Result of a validation check."""
    name: str
    passed: bool
    message: str
    critical: bool = True  # If critical, failure blocks startup in STRICT mode


@dataclass
class SecretAssessment:
    """Findings about a signing secret. Never contains the secret itself."""
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def entropy_score(value: str) -> float:
    """Shannon entropy normalized to 0..1 for the string's length."""
    if not value:
        return 0.0
    length = len(value)
    entropy = -sum(
        (count / length) * math.log2(count / length)
        for count in Counter(value).values()
    )
    max_entropy = math.log2(min(length, 256))
    return entropy / max_entropy if max_entropy > 0 else 0.0


def is_repetitive_pattern(value: str) -> bool:
    """Single repeated character, two-character alternation, or a run of 0-9a-zA-Z."""
    if not value or len(value) < 4:
        return True
    distinct = set(value)
    if len(distinct) == 1:
        return True
    if len(distinct) == 2 and len(value) > 8 and value == value[:2] * (len(value) // 2):
        return True
    return value in _SEQUENTIAL or value.lower() in _SEQUENTIAL.lower()


def assess_jwt_secret(secret: str | None, strict: bool) -> SecretAssessment:
    """Check a signing secret for placeholder values and weak structure.

    Placeholder and blocked values are always errors. Short, repetitive
    and low-entropy secrets are errors only when strict.
    """
    assessment = SecretAssessment()
    if not secret:
        assessment.errors.append("JWT_SECRET_KEY is not set")
        return assessment

    trimmed = secret.strip()
    if trimmed != secret:
        assessment.warnings.append("JWT_SECRET_KEY contains leading or trailing whitespace")

    if trimmed.lower() in BLOCKED_VALUES:
        assessment.errors.append("JWT_SECRET_KEY is a known weak/placeholder value")

    for pattern in PLACEHOLDER_PATTERNS:
        if pattern.search(trimmed):
            assessment.errors.append(f"JWT_SECRET_KEY matches placeholder pattern: {pattern.pattern}")
            break

    def flag(message: str) -> None:
        (assessment.errors if strict else assessment.warnings).append(message)

    if len(trimmed) < MIN_SECRET_LENGTH:
        flag(f"JWT_SECRET_KEY is too short ({len(trimmed)} chars, need {MIN_SECRET_LENGTH}+)")

    if is_repetitive_pattern(trimmed):
        flag("JWT_SECRET_KEY appears to be a repetitive or sequential pattern")

    if len(trimmed) >= MIN_SECRET_LENGTH and entropy_score(trimmed) < MIN_ENTROPY_SCORE:
        flag("JWT_SECRET_KEY has low entropy; use a randomly generated secret")

    return assessment


class StartupValidator:
    """Validates configuration and secrets on startup."""

    def __init__(self, level: ValidationLevel = ValidationLevel.STRICT, settings: Settings | None = None):
        self.level = level
        self.settings = settings or get_settings()
        self.results: list[ValidationResult] = []

    def _check(
        self,
        name: str,
        condition: bool,
        message: str,
        critical: bool = True,
    ) -> ValidationResult:
        result = ValidationResult(
            name=name,
            passed=condition,
            message=message,
            critical=critical,
        )
        self.results.append(result)
        return result

    def validate_jwt_secret(self) -> ValidationResult:
        assessment = assess_jwt_secret(
            self.settings.jwt_secret_key,
            strict=self.settings.is_strict_environment,
        )
        for warning in assessment.warnings:
            self._check("jwt_secret", False, warning, critical=False)

        if not assessment.valid:
            return self._check("jwt_secret", False, "; ".join(assessment.errors), critical=True)
        return self._check("jwt_secret", True, "JWT secret is properly configured")

    def validate_jwt_algorithm(self) -> ValidationResult:
        algorithm = self.settings.jwt_algorithm
        if algorithm.lower() == "none":
            return self._check("jwt_algorithm", False, "JWT_ALGORITHM must not be 'none'")
        if not algorithm.upper().startswith("HS"):
            return self._check(
                "jwt_algorithm",
                False,
                f"JWT_ALGORITHM {algorithm} needs a key pair; only HMAC algorithms are supported",
            )
        return self._check("jwt_algorithm", True, f"Signing tokens with {algorithm}")

    def validate_credential_key(self) -> ValidationResult:
        key = self.settings.credential_encryption_key
        if not key:
            return self._check("credential_key", False, "CREDENTIAL_ENCRYPTION_KEY is not set")
        if key == self.settings.jwt_secret_key:
            return self._check(
                "credential_key",
                False,
                "CREDENTIAL_ENCRYPTION_KEY must differ from JWT_SECRET_KEY",
                critical=self.settings.is_strict_environment,
            )
        if len(key) < MIN_SECRET_LENGTH:
            return self._check(
                "credential_key",
                False,
                f"CREDENTIAL_ENCRYPTION_KEY is too short ({len(key)} chars, need {MIN_SECRET_LENGTH}+)",
                critical=self.settings.is_strict_environment,
            )
        return self._check("credential_key", True, "Credential encryption key is configured")

    def validate_dev_mode(self) -> ValidationResult:
        if self.settings.dev_mode and self.settings.is_strict_environment:
            return self._check(
                "dev_mode",
                False,
                f"DEV_MODE is enabled in {self.settings.environment}; secrets may be auto-generated",
            )
        return self._check("dev_mode", True, "Development mode setting is appropriate", critical=False)

    def validate_cookie_security(self) -> ValidationResult:
        if self.settings.is_production and not self.settings.cookie_secure:
            return self._check(
                "cookie_secure",
                False,
                "COOKIE_SECURE is false in production; auth cookies would travel over plain HTTP",
            )
        return self._check("cookie_secure", True, "Auth cookie settings are appropriate", critical=False)

    def validate_database(self) -> ValidationResult:
        db_url = self.settings.database_url
        if not db_url:
            return self._check("database", False, "DATABASE_URL is not set")
        if "sqlite" in db_url and ":memory:" in db_url:
            return self._check(
                "database",
                False,
                "Using in-memory SQLite - revocations will be lost on restart",
                critical=False,
            )
        return self._check("database", True, "Database is configured")

    def run_all(self) -> list[ValidationResult]:
        """Run all validation checks."""
        self.validate_jwt_secret()
        self.validate_jwt_algorithm()
        self.validate_credential_key()
        self.validate_dev_mode()
        self.validate_cookie_security()
        self.validate_database()
        return self.results

    def report(self) -> bool:
        """Log validation results and return success status."""
        if not self.results:
            self.run_all()

        passed = [r for r in self.results if r.passed]
        failed = [r for r in self.results if not r.passed and r.critical]
        warnings = [r for r in self.results if not r.passed and not r.critical]

        logger.info(f"Startup validation: {len(passed)} passed, {len(warnings)} warnings, {len(failed)} failed")
        for result in passed:
            logger.debug(f"  [PASS] {result.name}: {result.message}")
        for result in warnings:
            logger.warning(f"  [WARN] {result.name}: {result.message}")
        for result in failed:
            logger.error(f"  [FAIL] {result.name}: {result.message}")

        if self.level in (ValidationLevel.SKIP, ValidationLevel.WARN):
            return True
        return not failed


def default_level(settings: Settings) -> ValidationLevel:
    if settings.startup_validation_level:
        try:
            return ValidationLevel(settings.startup_validation_level.lower())
        except ValueError:
            logger.warning(
                "Unknown STARTUP_VALIDATION_LEVEL, falling back to environment default",
                level=settings.startup_validation_level,
            )
    return ValidationLevel.STRICT if settings.is_strict_environment else ValidationLevel.WARN


def validate_startup(level: ValidationLevel | None = None, settings: Settings | None = None) -> bool:
    """Validate startup configuration.

    Raises:
        RuntimeError: If STRICT mode and validation failed
    """
    settings = settings or get_settings()
    if level is None:
        level = default_level(settings)

    if level == ValidationLevel.SKIP:
        logger.info("Startup validation skipped")
        return True

    validator = StartupValidator(level, settings)
    success = validator.report()

    if not success and level == ValidationLevel.STRICT:
        raise RuntimeError(
            "Startup validation failed in STRICT mode. "
            "Fix configuration issues or set STARTUP_VALIDATION_LEVEL=warn to continue."
        )
    return success
