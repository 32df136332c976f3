"""
MESSAI MLOps Backend Configuration

Uses pydantic-settings for type-safe environment variable loading.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Find .env file: check CWD first, then parent (project root)
_env_file = Path(".env")
if not _env_file.exists():
    _parent_env = Path(__file__).resolve().parent.parent.parent / ".env"
    if _parent_env.exists():
        _env_file = _parent_env


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "MESSAI MLOps"
    app_version: str = "1.0.0"
    app_env: str = "local"
    debug: bool = False

    # Model monitor defaults (per-model overrides via ModelMonitor.set_thresholds)
    monitor_accuracy_min: float = 0.8
    monitor_latency_max_ms: float = 1000.0
    monitor_error_rate_max: float = 0.05
    monitor_throughput_min: float = 10.0
    monitor_anomaly_window: int = 50
    monitor_anomaly_min_samples: int = 10
    monitor_anomaly_z_threshold: float = 3.0

    # Model drift thresholds
    drift_accuracy_delta: float = 0.05
    drift_latency_relative_delta: float = 0.20
    drift_error_rate_delta: float = 0.02

    # Feature drift
    feature_drift_threshold: float = 0.1
    feature_psi_floor: float = 0.0001

    # Workflow step budget
    step_max_retries: int = 3
    step_timeout_seconds: float = 300.0
    step_backoff_seconds: float = 1.0

    # Knowledge graph
    graph_edge_weight_increment: float = 0.1
    graph_emerging_window_days: int = 365
    graph_research_gap_max_hops: int = 3
    graph_max_gap_insights: int = 5
    graph_max_key_concepts: int = 10
    graph_max_emerging_connections: int = 5

    # Literature / LLM provider (optional; deterministic fallback when unset)
    literature_provider_url: str = ""
    literature_provider_api_key: str = ""
    literature_provider_timeout_seconds: float = 30.0

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {
        "env_file": str(_env_file),
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    settings = Settings()
    _enforce_guardrails(settings)
    return settings


def _enforce_guardrails(settings: Settings) -> None:
    env = settings.app_env.strip().lower()
    is_local = env in {"", "local", "dev", "development", "test"}

    if settings.step_max_retries < 1:
        raise ValueError("step_max_retries must be at least 1")
    if settings.step_timeout_seconds <= 0:
        raise ValueError("step_timeout_seconds must be positive")
    if is_local:
        return

    if settings.debug:
        raise ValueError("Refusing to start with debug=true outside local/dev/test")
    if settings.literature_provider_url.startswith("http://"):
        raise ValueError("Refusing to call a literature provider over plain HTTP outside local/dev/test")
