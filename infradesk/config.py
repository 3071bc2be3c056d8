from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    # Connection store - SQLite by default (desktop install), any async SQLAlchemy URL works
    database_url: str = "sqlite+aiosqlite:///./infradesk.db"

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # API server bind address (python -m infradesk)
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # CORS Configuration
    # Comma-separated list of allowed origins for CORS requests
    cors_origins: str = ""

    @property
    def cors_origin_list(self) -> list:
        """Parsed CORS origins."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    # ==========================================================================
    # Kubernetes Cluster Access
    # ==========================================================================
    # In-cluster config is tried first; these only apply to the kubeconfig fallback
    kubeconfig_path: str = ""  # Empty = default kubeconfig location (~/.kube/config)
    kube_context: str = ""  # Empty = current-context from kubeconfig

    # ==========================================================================
    # Port Forward Settings
    # ==========================================================================
    # Local address tunnels listen on (also written back into connection descriptors)
    port_forward_local_host: str = "127.0.0.1"

    # Local port band handed out to tunnels (inclusive), kept above the ephemeral range
    port_forward_port_min: int = 40000
    port_forward_port_max: int = 50000

    # Reap tunnels untouched for X seconds (default: 10 minutes)
    port_forward_idle_timeout_seconds: int = 600

    # Background loop intervals
    port_forward_health_interval_seconds: int = 30  # Health probe every 30 seconds
    port_forward_cleanup_interval_seconds: int = 300  # Idle reaper every 5 minutes

    # Max time to establish a tunnel before it lands in error
    port_forward_creation_timeout_seconds: float = 30.0

    # TCP connect timeout used by the health probe
    port_forward_probe_timeout_seconds: float = 2.0

    # How often a running tunnel checks that its pinned pod is still ready
    port_forward_liveness_interval_seconds: float = 10.0

    # Errored tunnels are reaped after staying in error this long (0 = never reap)
    port_forward_error_retention_seconds: int = 1800

    class Config:
        # For native development: looks for .env in the working directory
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names

@lru_cache()
def get_settings():
    return Settings()
