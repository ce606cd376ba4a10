"""
Deployer configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"

MISSING_OUTPUT_POLICIES = ("use_build_directory", "fail")


@dataclass(frozen=True)
class Settings:
    """Deployer settings (immutable)."""
    database_url: str
    workspaces_dir: Path
    artifacts_dir: Path
    # Worker
    concurrency: int = 2
    poll_interval_s: float = 1.0
    lease_ms: int = 60_000
    shutdown_grace_s: float = 30.0
    command_timeout_s: int = 900
    missing_output_policy: str = "use_build_directory"
    # Default job options
    max_attempts: int = 3
    backoff_delay_ms: int = 5000
    backoff_multiplier: float = 2.0
    keep_completed: int = 100
    keep_failed: int = 50
    completed_max_age_s: int = 24 * 3600
    failed_max_age_s: Optional[int] = None  # failed jobs are kept by count only
    # Object store
    aws_region: str = "eu-north-1"
    s3_bucket: str = "aws-auto-deployer"
    aws_access_key_id: Optional[str] = None  # Never logged
    aws_secret_access_key: Optional[str] = None  # Never logged
    log_level: str = "INFO"

    @property
    def has_static_credentials(self) -> bool:
        """True when explicit AWS keys are configured (else boto3's chain is used)."""
        return bool(self.aws_access_key_id and self.aws_secret_access_key)


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _optional_int_env(name: str) -> Optional[int]:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def get_settings() -> Settings:
    """Load deployer settings from environment."""
    policy = os.getenv("DEPLOYER_MISSING_OUTPUT_POLICY", "use_build_directory").lower()
    if policy not in MISSING_OUTPUT_POLICIES:
        policy = "use_build_directory"

    return Settings(
        database_url=os.getenv(
            "DEPLOYER_DATABASE_URL", f"sqlite:///{DATA_DIR / 'deployer.db'}"
        ),
        workspaces_dir=Path(os.getenv("DEPLOYER_WORKSPACES_DIR", str(PROJECT_ROOT / "temp"))),
        artifacts_dir=Path(os.getenv("DEPLOYER_ARTIFACTS_DIR", str(PROJECT_ROOT / "dist"))),
        concurrency=max(1, _int_env("DEPLOYER_CONCURRENCY", 2)),
        poll_interval_s=_float_env("DEPLOYER_POLL_INTERVAL_S", 1.0),
        lease_ms=_int_env("DEPLOYER_LEASE_MS", 60_000),
        shutdown_grace_s=_float_env("DEPLOYER_SHUTDOWN_GRACE_S", 30.0),
        command_timeout_s=_int_env("DEPLOYER_COMMAND_TIMEOUT_S", 900),
        missing_output_policy=policy,
        max_attempts=max(1, _int_env("DEPLOYER_MAX_ATTEMPTS", 3)),
        backoff_delay_ms=_int_env("DEPLOYER_BACKOFF_DELAY_MS", 5000),
        backoff_multiplier=_float_env("DEPLOYER_BACKOFF_MULTIPLIER", 2.0),
        keep_completed=_int_env("DEPLOYER_KEEP_COMPLETED", 100),
        keep_failed=_int_env("DEPLOYER_KEEP_FAILED", 50),
        completed_max_age_s=_int_env("DEPLOYER_COMPLETED_MAX_AGE_S", 24 * 3600),
        failed_max_age_s=_optional_int_env("DEPLOYER_FAILED_MAX_AGE_S"),
        aws_region=os.getenv("AWS_REGION", "eu-north-1"),
        s3_bucket=os.getenv("AWS_S3_BUCKET_NAME", "aws-auto-deployer"),
        aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID") or None,
        aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
