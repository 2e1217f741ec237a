"""
Application configuration loaded from the environment.

Node-specific settings (LLM provider, parser heuristics) live next to the
node that uses them; this module only covers what the process bootstrap
needs to wire the app together.
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class AppConfig:
    """Process-level configuration for the API server."""
    storage_dir: str = "./storage"
    forwarding_domain: str = "inbox.creatordeals.app"
    log_level: str = "INFO"
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"]
    )

    @classmethod
    def from_env(cls) -> "AppConfig":
        cors = os.getenv("CORS_ORIGINS")
        return cls(
            storage_dir=os.getenv("STORAGE_DIR", "./storage"),
            forwarding_domain=os.getenv("FORWARDING_DOMAIN", "inbox.creatordeals.app"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=_split_csv(cors) if cors else [
                "http://localhost:5173",
                "http://localhost:3000",
            ],
        )
