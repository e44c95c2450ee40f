############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# settings.py: Application configuration and environment settings
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Application settings using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_version() -> str:
    """Read version from pyproject.toml (single source of truth)."""
    try:
        from importlib.metadata import version
        return version("tandem")
    except Exception:
        pass
    # Fallback: read pyproject.toml directly (works in dev without pip install)
    try:
        import tomllib
        toml_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
        with open(toml_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except Exception:
        return "0.0.0"


# Permission tiers forwarded by the upstream policy gate.
# candidates: synthesis fan-out K (1 disables synthesis)
# render_attempts: total diffusion renders allowed per GenerationSpec
# flux_dev: whether the tier may request the slower "dev" diffusion mode
TIER_POLICIES: Dict[str, Dict[str, int]] = {
    "free": {"candidates": 1, "render_attempts": 1, "flux_dev": 0},
    "pro": {"candidates": 1, "render_attempts": 2, "flux_dev": 0},
    "sovereign": {"candidates": 3, "render_attempts": 2, "flux_dev": 1},
}


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.prod"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Tandem"
    app_version: str = Field(default_factory=_get_version)
    debug: bool = False
    reload: bool = False
    host: str = "0.0.0.0"
    port: int = 8000

    # Text-generation sidecar (Ollama API)
    text_sidecar_url: str = "http://localhost:11434"
    text_sidecar_timeout: int = 300  # seconds, long generations
    text_sidecar_control_timeout: int = 15  # list/unload/preload calls

    # Diffusion sidecar (FLUX)
    diffusion_sidecar_url: str = "http://localhost:3200"
    diffusion_sidecar_timeout: int = 300
    diffusion_composite_timeout: int = 30

    # GPU metrics agent
    gpu_agent_url: str = "http://localhost:8007"
    gpu_agent_key: Optional[str] = None
    gpu_agent_timeout: int = 5

    # Accelerator arbitration
    accelerator_profile: str = "rtx5090"
    lock_timeout_seconds: int = 120
    capacity_cache_seconds: float = 3.0

    # Models
    chat_model: str = "kuro-core"
    judge_model: str = "kuro-logic"
    merge_model: Optional[str] = None
    eval_model: str = "kuro-eye"
    spec_model: str = "kuro-eye"
    model_aliases: Dict[str, str] = {}

    # Synthesis
    synthesis_candidates: int = 3
    synthesis_temperatures: List[float] = [0.7, 0.3, 0.5]
    synthesis_pass_threshold: float = 8.5
    synthesis_candidate_char_budget: int = 6000
    synthesis_actor_ctx: int = 32768
    synthesis_judge_ctx: int = 16384
    synthesis_merge_ctx: int = 32768

    # Request lifecycle
    controller_max_retries: int = 1
    chat_context_turns: int = 6
    chat_default_temperature: float = 0.7
    chat_context_window: int = 16384

    # Vision pipeline
    vision_max_render_attempts: int = 2
    vision_default_width: int = 1024
    vision_default_height: int = 1024
    vision_eval_timeout: int = 25
    vision_spec_timeout: int = 30
    vision_retention_profile: str = "lab"
    vision_cleanup_interval: int = 3600  # seconds

    # Storage
    artifact_storage_path: str = "/var/lib/tandem/vision"
    session_storage_path: str = "/var/lib/tandem/sessions"
    artifact_max_size_mb: int = 50

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None

    # Audit
    audit_log_enabled: bool = True
    audit_buffer_size: int = 500

    # Observability
    metrics_enabled: bool = True

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8000"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("synthesis_temperatures", mode="before")
    @classmethod
    def parse_temperatures(cls, v):
        """Accept comma-separated temperatures from the environment."""
        if isinstance(v, str):
            return [float(t.strip()) for t in v.split(",") if t.strip()]
        return v

    def get_tier_policy(self, tier: str) -> Dict[str, int]:
        """Get the policy limits for a permission tier (unknown tiers are free)."""
        policy = dict(TIER_POLICIES.get((tier or "free").lower(), TIER_POLICIES["free"]))
        policy["candidates"] = min(policy["candidates"], self.synthesis_candidates)
        policy["render_attempts"] = min(
            policy["render_attempts"], self.vision_max_render_attempts
        )
        return policy

    def resolve_model(self, model_id: str) -> str:
        """Map an internal model id to the sidecar model tag."""
        return self.model_aliases.get(model_id, model_id)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
