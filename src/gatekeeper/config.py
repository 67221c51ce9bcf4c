"""
Configuration for gatekeeper.

Pydantic models with sane defaults, loadable from a YAML file with ${VAR}
expansion and a GATEKEEPER_* environment variable overlay.
"""

import os
import re
import secrets
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, Field


class TokenConfig(BaseModel):
    """Signed access token and refresh token lifetimes."""
    jwt_secret: str = Field(default_factory=lambda: secrets.token_urlsafe(64))
    algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(default=60, ge=1)
    refresh_token_expire_days: int = Field(default=7, ge=1)


class PasswordConfig(BaseModel):
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)


class LockoutConfig(BaseModel):
    max_failed_login_attempts: int = Field(default=5, ge=1)
    lockout_duration_minutes: int = Field(default=30, ge=1)


class ApiKeyConfig(BaseModel):
    default_expiration_days: int = Field(default=365, ge=1)
    key_prefix: str = "gk_"


class GuardConfig(BaseModel):
    """Permission evaluation settings."""
    cache_ttl_seconds: float = Field(default=300, ge=0)
    seed_default_policies: bool = True
    # Treat an API key scope mismatch as a hard denial instead of "no grant"
    strict_api_key_scope: bool = False


class AuditConfig(BaseModel):
    enabled: bool = True
    log_directory: str = "./logs/audit"
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1)
    max_files: int = Field(default=10, ge=1)
    retention_days: int = Field(default=90, ge=1)
    buffer_size: int = Field(default=100, ge=1)
    flush_interval_seconds: float = Field(default=5.0, gt=0)
    max_events_in_memory: int = Field(default=10000, ge=1)
    enable_console_output: bool = True
    enable_file_output: bool = True


class MaintenanceConfig(BaseModel):
    """Background cleanup cadence and retention windows."""
    cleanup_interval_seconds: float = Field(default=3600, gt=0)
    login_attempt_retention_days: int = Field(default=7, ge=1)
    max_login_attempts_kept: int = Field(default=1000, ge=1)
    access_pattern_retention_hours: int = Field(default=24, ge=1)
    purge_interval_seconds: float = Field(default=24 * 3600, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}


class GatekeeperConfig(BaseModel):
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    passwords: PasswordConfig = Field(default_factory=PasswordConfig)
    lockout: LockoutConfig = Field(default_factory=LockoutConfig)
    api_keys: ApiKeyConfig = Field(default_factory=ApiKeyConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ============================================================================
# Loading
# ============================================================================

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")

# GATEKEEPER_<suffix> -> (section, field)
_ENV_VAR_MAP: Dict[str, Tuple[str, str]] = {
    "JWT_SECRET": ("tokens", "jwt_secret"),
    "JWT_ALGORITHM": ("tokens", "algorithm"),
    "ACCESS_TOKEN_EXPIRE_MINUTES": ("tokens", "access_token_expire_minutes"),
    "REFRESH_TOKEN_EXPIRE_DAYS": ("tokens", "refresh_token_expire_days"),
    "BCRYPT_ROUNDS": ("passwords", "bcrypt_rounds"),
    "MAX_FAILED_LOGIN_ATTEMPTS": ("lockout", "max_failed_login_attempts"),
    "LOCKOUT_DURATION_MINUTES": ("lockout", "lockout_duration_minutes"),
    "API_KEY_EXPIRATION_DAYS": ("api_keys", "default_expiration_days"),
    "PERMISSION_CACHE_TTL": ("guard", "cache_ttl_seconds"),
    "STRICT_API_KEY_SCOPE": ("guard", "strict_api_key_scope"),
    "AUDIT_ENABLED": ("audit", "enabled"),
    "AUDIT_LOG_DIRECTORY": ("audit", "log_directory"),
    "AUDIT_BUFFER_SIZE": ("audit", "buffer_size"),
    "AUDIT_FLUSH_INTERVAL": ("audit", "flush_interval_seconds"),
    "AUDIT_RETENTION_DAYS": ("audit", "retention_days"),
    "AUDIT_MAX_FILES": ("audit", "max_files"),
    "LOG_LEVEL": ("logging", "level"),
}

_SECTION_MODELS: Dict[str, type] = {
    "tokens": TokenConfig,
    "passwords": PasswordConfig,
    "lockout": LockoutConfig,
    "api_keys": ApiKeyConfig,
    "guard": GuardConfig,
    "audit": AuditConfig,
    "maintenance": MaintenanceConfig,
    "logging": LoggingConfig,
}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR} in strings."""
    if isinstance(data, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), data)
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(v) for v in data]
    return data


def _cast_env_value(section: str, field: str, raw: str) -> Any:
    field_info = _SECTION_MODELS[section].model_fields.get(field)
    annotation = field_info.annotation if field_info is not None else str
    if annotation is bool:
        return raw.lower() in ("1", "true", "yes")
    try:
        if annotation is int:
            return int(raw)
        if annotation is float:
            return float(raw)
    except ValueError:
        # Leave it to pydantic to report
        return raw
    return raw


def _apply_env_overlay(data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply GATEKEEPER_* environment variables on top of file data."""
    for suffix, (section, field) in _ENV_VAR_MAP.items():
        raw = os.environ.get(f"GATEKEEPER_{suffix}")
        if raw is None:
            continue
        if not isinstance(data.get(section), dict):
            data[section] = {}
        data[section][field] = _cast_env_value(section, field, raw)
    return data


def load_config(path: Optional[Path] = None) -> GatekeeperConfig:
    """
    Load configuration.

    Args:
        path: Optional YAML file. Missing file means "defaults only".

    Returns:
        Validated GatekeeperConfig
    """
    data: Dict[str, Any] = {}
    if path is not None and Path(path).exists():
        with open(path) as f:
            data = _expand_env_vars(yaml.safe_load(f) or {})
    data = _apply_env_overlay(data)
    return GatekeeperConfig(**data)
