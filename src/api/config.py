"""API Configuration."""

from dataclasses import dataclass, field


@dataclass
class APIConfig:
    """Core API settings."""

    title: str = "Approval Engine API"
    version: str = "1.0.0"
    description: str = "Approval workflows, delegation and escalation"
    prefix: str = "/api/v1"
    docs_url: str = "/docs"
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    cors_methods: list[str] = field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE"])
    cors_headers: list[str] = field(
        default_factory=lambda: ["Content-Type", "X-Actor-ID", "X-Request-ID"]
    )
    scheduler_enabled: bool = False


DEFAULT_API_CONFIG = APIConfig()
