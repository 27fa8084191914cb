"""
Configuration management using Pydantic Settings with safe access wrapper
"""
from pydantic_settings import BaseSettings
from typing import List, Optional, Any


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Canary Traffic Router"
    version: str = "1.0.0"
    debug: bool = False
    environment: str = "production"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging settings
    log_level: str = "INFO"
    log_file_max_bytes: int = 10485760
    log_file_backup_count: int = 10
    log_decisions: bool = True

    # Assignment store settings
    redis_url: Optional[str] = None
    assignment_ttl_seconds: int = 1800      # session lifetime
    assignment_store_timeout_ms: int = 50
    max_memory_assignments: int = 100000
    store_circuit_breaker_threshold: int = 5
    store_circuit_breaker_timeout: int = 30

    # Routing settings
    sticky_cookie_name: str = "canary_assignment"
    client_id_cookie_name: str = "canary_client_id"
    client_id_cookie_max_age: int = 31536000
    override_header: str = "X-Canary-Version"
    version_header: str = "X-Served-Version"
    user_id_header: str = "X-User-ID"
    default_version: str = "stable"
    bucketing_salt: str = ""

    # Rollout settings
    canary_stages: List[int] = [1, 5, 10, 25, 50, 100]
    ramp_stage_wait_seconds: int = 300
    rollout_state_path: Optional[str] = None

    # Control plane security
    require_auth: bool = False
    api_key: Optional[str] = None

    # Monitoring
    enable_metrics: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"   # allow unknown env vars without error

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.validate_settings()

    def validate_settings(self):
        """Validate critical settings on startup"""
        errors = []

        if self.environment not in ["development", "testing", "production"]:
            errors.append(f"Invalid environment: {self.environment}")

        if self.assignment_ttl_seconds <= 0:
            errors.append("assignment_ttl_seconds must be positive")

        if self.assignment_store_timeout_ms <= 0:
            errors.append("assignment_store_timeout_ms must be positive")

        if not self.default_version:
            errors.append("default_version is required")

        if any(not 0 < stage <= 100 for stage in self.canary_stages):
            errors.append(f"Canary stages must be within (0, 100]: {self.canary_stages}")
        elif self.canary_stages != sorted(set(self.canary_stages)):
            errors.append(f"Canary stages must be strictly increasing: {self.canary_stages}")

        if self.require_auth and not self.api_key:
            errors.append("api_key is required when require_auth is enabled")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")

    @property
    def assignment_store_timeout(self) -> float:
        """Store timeout in seconds, as the redis client expects it"""
        return self.assignment_store_timeout_ms / 1000.0


class SafeSettings:
    """Safe wrapper for settings with fallback defaults"""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._defaults = {
            "log_level": "INFO",
            "environment": "production",
            "debug": False,
            "redis_url": None,
            "assignment_ttl_seconds": 1800,
            "assignment_store_timeout_ms": 50,
            "max_memory_assignments": 100000,
            "sticky_cookie_name": "canary_assignment",
            "client_id_cookie_name": "canary_client_id",
            "client_id_cookie_max_age": 31536000,
            "override_header": "X-Canary-Version",
            "default_version": "stable",
            "canary_stages": [1, 5, 10, 25, 50, 100],
            "require_auth": False,
            "enable_metrics": True,
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Safely get setting value with fallback"""
        try:
            value = getattr(self._settings, key, None)
            if value is None:
                value = self._defaults.get(key, default)
            return value
        except Exception:
            return self._defaults.get(key, default)

    def __getattr__(self, key: str) -> Any:
        """Proxy attribute access with safety"""
        return self.get(key)

    @property
    def raw(self) -> Settings:
        """Get raw settings object"""
        return self._settings


# Initialize settings with safety wrapper
_raw_settings = Settings()
settings = SafeSettings(_raw_settings)
