"""
Runtime configuration.

Values come from the process environment, optionally seeded from a
``.env`` file. Variables already present in the environment win over
the file.
"""

import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

DEFAULT_JWT_SECRET = "change-me-in-production"
DEFAULT_JWT_REFRESH_SECRET = "change-refresh-secret"


def _to_bool(val: Optional[str], default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _to_int(val: Optional[str], default: int) -> int:
    try:
        return int(val) if val is not None else default
    except ValueError:
        return default


@dataclass
class Settings:
    """Settings consumed by the authentication core."""

    # Tokens
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_refresh_secret: str = DEFAULT_JWT_REFRESH_SECRET
    token_issuer: str = "plantelligence-backend"
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 604800
    password_reset_ttl_seconds: int = 900

    # Passwords
    password_expiry_days: int = 90
    enforce_password_policy: bool = True
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536

    # MFA
    mfa_totp_encryption_key: str = ""
    mfa_issuer: str = "Plantelligence"
    mfa_debug_mode: bool = False
    password_reset_url: str = "https://demo.plantelligence/reset"

    # Storage
    storage_backend: str = "json"
    json_store_path: str = os.path.join("data", "local-db.json")
    database_url: str = "sqlite:///plantvault.db"

    # Email
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_use_tls: bool = True

    # Process
    log_level: str = "INFO"
    sweep_interval_seconds: int = 300

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Build settings from the environment.

        Args:
            env_file: Optional path to a .env file (default: search upwards)

        Returns:
            Populated Settings instance
        """
        load_dotenv(env_file, override=False)
        env = os.environ
        defaults = cls()

        return cls(
            jwt_secret=env.get("JWT_SECRET", defaults.jwt_secret),
            jwt_refresh_secret=env.get("JWT_REFRESH_SECRET", defaults.jwt_refresh_secret),
            token_issuer=env.get("TOKEN_ISSUER", defaults.token_issuer),
            access_token_ttl_seconds=_to_int(env.get("ACCESS_TOKEN_TTL_SECONDS"), defaults.access_token_ttl_seconds),
            refresh_token_ttl_seconds=_to_int(env.get("REFRESH_TOKEN_TTL_SECONDS"), defaults.refresh_token_ttl_seconds),
            password_reset_ttl_seconds=_to_int(env.get("PASSWORD_RESET_TTL_SECONDS"), defaults.password_reset_ttl_seconds),
            password_expiry_days=_to_int(env.get("PASSWORD_EXPIRY_DAYS"), defaults.password_expiry_days),
            enforce_password_policy=_to_bool(env.get("ENFORCE_PASSWORD_POLICY"), defaults.enforce_password_policy),
            argon2_time_cost=_to_int(env.get("ARGON2_TIME_COST"), defaults.argon2_time_cost),
            argon2_memory_cost=_to_int(env.get("ARGON2_MEMORY_COST"), defaults.argon2_memory_cost),
            mfa_totp_encryption_key=env.get("MFA_TOTP_ENCRYPTION_KEY", defaults.mfa_totp_encryption_key),
            mfa_issuer=env.get("MFA_ISSUER", defaults.mfa_issuer),
            mfa_debug_mode=_to_bool(env.get("MFA_DEBUG_MODE"), defaults.mfa_debug_mode),
            password_reset_url=env.get("PASSWORD_RESET_URL", defaults.password_reset_url),
            storage_backend=env.get("STORAGE_BACKEND", defaults.storage_backend).strip().lower(),
            json_store_path=env.get("JSON_STORE_PATH", defaults.json_store_path),
            database_url=env.get("DATABASE_URL", defaults.database_url),
            smtp_host=env.get("SMTP_HOST", defaults.smtp_host),
            smtp_port=_to_int(env.get("SMTP_PORT"), defaults.smtp_port),
            smtp_user=env.get("SMTP_USER", defaults.smtp_user),
            smtp_password=env.get("SMTP_PASSWORD", defaults.smtp_password),
            smtp_from=env.get("SMTP_FROM", defaults.smtp_from),
            smtp_use_tls=_to_bool(env.get("SMTP_USE_TLS"), defaults.smtp_use_tls),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
            sweep_interval_seconds=_to_int(env.get("SWEEP_INTERVAL_SECONDS"), defaults.sweep_interval_seconds),
        )

    def validate(self) -> List[str]:
        """
        Report configuration that is unsafe for production.

        Returns:
            List of human-readable problems (empty if none)
        """
        problems = []
        if self.jwt_secret == DEFAULT_JWT_SECRET:
            problems.append("JWT_SECRET is using the development default")
        if self.jwt_refresh_secret == DEFAULT_JWT_REFRESH_SECRET:
            problems.append("JWT_REFRESH_SECRET is using the development default")
        if self.jwt_secret == self.jwt_refresh_secret:
            problems.append("Access and refresh tokens share the same signing secret")
        if not self.mfa_totp_encryption_key:
            problems.append("MFA_TOTP_ENCRYPTION_KEY is not set")
        if self.mfa_debug_mode:
            problems.append("MFA_DEBUG_MODE is enabled; codes are echoed to callers")
        if self.storage_backend not in ("memory", "json", "sql"):
            problems.append(f"Unknown STORAGE_BACKEND '{self.storage_backend}'")
        return problems
