"""Configuration parsing and validation for the SonarQube branch synchronizer."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .errors import AuthenticationError, ConfigurationError

DEFAULT_SCANNER_VERSION = "4.8.0.2856"
DEFAULT_SCANNER_URL = (
    "https://binaries.sonarsource.com/Distribution/sonar-scanner-cli/"
    f"sonar-scanner-cli-{DEFAULT_SCANNER_VERSION}-linux.zip"
)


@dataclass(frozen=True)
class GiteaConfig:
    """Connection settings for the Gitea version-control host."""

    url: str
    token: str
    base_branch: str = "main"
    timeout_seconds: int = 30


@dataclass(frozen=True)
class SonarQubeConfig:
    """Connection and project settings for the SonarQube server."""

    url: str
    token: str
    project_prefix: str = ""
    default_visibility: str = "private"
    timeout_seconds: int = 30
    disable_branch_analysis: bool = True


@dataclass(frozen=True)
class ScannerConfig:
    """Settings used to download and run sonar-scanner."""

    scanner_url: str = DEFAULT_SCANNER_URL
    scanner_version: str = DEFAULT_SCANNER_VERSION
    java_opts: str = "-Xmx2g"
    timeout_seconds: int = 600
    work_dir: str = "/tmp/sonarsync"
    temp_dir: str = "/tmp/sonarsync/scanner/temp"
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResilienceConfig:
    """Retry and circuit-breaker tuning shared by both external services."""

    max_retries: int = 3
    retry_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    failure_threshold: int = 5
    success_threshold: int = 1
    breaker_timeout: float = 60.0
    retryable_errors: Tuple[str, ...] = ("connection", "timeout", "temporary")


@dataclass(frozen=True)
class Config:
    """Validated runtime settings used by the synchronizer."""

    gitea: GiteaConfig
    sonarqube: SonarQubeConfig
    scanner: ScannerConfig
    resilience: ResilienceConfig
    max_concurrency: int = 10


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid value for '{name}': expected an integer.") from exc
    if value < 0:
        raise ConfigurationError(f"Invalid value for '{name}': expected a non-negative integer.")
    return value


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid value for '{name}': expected a number.") from exc
    if value < 0:
        raise ConfigurationError(f"Invalid value for '{name}': expected a non-negative number.")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid value for '{name}': expected a boolean.")


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _env(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def load_resilience_config() -> ResilienceConfig:
    """Read retry and breaker tuning from ``SONARSYNC_*`` environment variables."""
    config = ResilienceConfig(
        max_retries=_env_int("SONARSYNC_RETRY_MAX_RETRIES", 3),
        retry_delay=_env_float("SONARSYNC_RETRY_DELAY", 1.0),
        max_delay=_env_float("SONARSYNC_RETRY_MAX_DELAY", 30.0),
        backoff_multiplier=_env_float("SONARSYNC_RETRY_BACKOFF", 2.0),
        failure_threshold=_env_int("SONARSYNC_BREAKER_FAILURE_THRESHOLD", 5),
        success_threshold=_env_int("SONARSYNC_BREAKER_SUCCESS_THRESHOLD", 1),
        breaker_timeout=_env_float("SONARSYNC_BREAKER_TIMEOUT", 60.0),
        retryable_errors=_env_list(
            "SONARSYNC_RETRYABLE_ERRORS", ("connection", "timeout", "temporary")
        ),
    )
    if config.failure_threshold < 1 or config.success_threshold < 1:
        raise ConfigurationError("Circuit breaker thresholds must be greater than 0.")
    if config.backoff_multiplier < 1:
        raise ConfigurationError("Retry backoff multiplier must be at least 1.")
    return config


def load_config(source_dir: Optional[str] = None) -> Config:
    """Build and validate application configuration from the environment.

    Args:
        source_dir: Optional working directory overriding
            ``SONARQUBE_SCANNER_WORK_DIR``.

    Returns:
        A validated ``Config`` instance.

    Raises:
        ConfigurationError: If a URL is missing or a numeric setting is invalid.
        AuthenticationError: If ``GITEA_TOKEN`` or ``SONARQUBE_TOKEN`` is not configured.
    """
    gitea_url = _env("GITEA_URL").rstrip("/")
    sonar_url = _env("SONARQUBE_URL", "http://localhost:9000").rstrip("/")
    if not gitea_url:
        raise ConfigurationError("Missing required Gitea URL. Set the 'GITEA_URL' environment variable.")
    if not sonar_url:
        raise ConfigurationError("Missing required SonarQube URL. Set the 'SONARQUBE_URL' environment variable.")

    gitea_token = _env("GITEA_TOKEN")
    if not gitea_token:
        raise AuthenticationError(
            "Missing required Gitea access token. "
            "Set the 'GITEA_TOKEN' environment variable before running the synchronizer."
        )
    sonar_token = _env("SONARQUBE_TOKEN")
    if not sonar_token:
        raise AuthenticationError(
            "Missing required SonarQube token. "
            "Set the 'SONARQUBE_TOKEN' environment variable before running the synchronizer."
        )

    visibility = _env("SONARQUBE_DEFAULT_VISIBILITY", "private")
    if visibility not in ("private", "public"):
        raise ConfigurationError("SonarQube default visibility must be 'private' or 'public'.")

    scanner = ScannerConfig(
        scanner_url=_env("SONARQUBE_SCANNER_URL", DEFAULT_SCANNER_URL),
        scanner_version=_env("SONARQUBE_SCANNER_VERSION", DEFAULT_SCANNER_VERSION),
        java_opts=_env("SONARQUBE_JAVA_OPTS", "-Xmx2g"),
        timeout_seconds=_env_int("SONARQUBE_SCANNER_TIMEOUT", 600),
        work_dir=source_dir or _env("SONARQUBE_SCANNER_WORK_DIR", "/tmp/sonarsync"),
        temp_dir=_env("SONARQUBE_SCANNER_TEMP_DIR", "/tmp/sonarsync/scanner/temp"),
    )
    if scanner.timeout_seconds <= 0:
        raise ConfigurationError("Scanner timeout must be greater than 0.")

    max_concurrency = _env_int("SONARSYNC_MAX_CONCURRENCY", 10)
    if max_concurrency <= 0:
        raise ConfigurationError("Invalid value for 'SONARSYNC_MAX_CONCURRENCY': expected an integer greater than 0.")

    return Config(
        gitea=GiteaConfig(
            url=gitea_url,
            token=gitea_token,
            base_branch=_env("GITEA_BASE_BRANCH", "main"),
            timeout_seconds=_env_int("GITEA_TIMEOUT", 30),
        ),
        sonarqube=SonarQubeConfig(
            url=sonar_url,
            token=sonar_token,
            project_prefix=_env("SONARQUBE_PROJECT_PREFIX"),
            default_visibility=visibility,
            timeout_seconds=_env_int("SONARQUBE_TIMEOUT", 30),
            disable_branch_analysis=_env_bool("SONARQUBE_DISABLE_BRANCH_ANALYSIS", True),
        ),
        scanner=scanner,
        resilience=load_resilience_config(),
        max_concurrency=max_concurrency,
    )
