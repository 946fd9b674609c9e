"""
Configuration for Gist Chat.
"""

import os
from pathlib import Path
from dataclasses import dataclass

# Application version - update this for each release
VERSION = "0.3.0"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class Config:
    """Application configuration."""

    # Local API server
    HOST: str = os.getenv("GIST_HOST", "127.0.0.1")
    PORT: int = _env_int("GIST_PORT", 18422)

    # Device storage (keys live here and are never synced)
    STORAGE_DIR: Path = Path(os.getenv("GIST_STORAGE_DIR", str(Path.home() / ".gist-chat")))

    # Remote backend: "supabase" or "gist"
    BACKEND: str = os.getenv("GIST_BACKEND", "supabase")

    # Supabase settings
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "http://localhost:54321")
    SUPABASE_ANON_KEY: str = os.getenv("SUPABASE_ANON_KEY", "")

    # GitHub Gist settings. Point GITHUB_API_URL at the proxy to keep the
    # token off the client.
    GITHUB_API_URL: str = os.getenv("GITHUB_API_URL", "https://api.github.com")
    GITHUB_TOKEN: str = os.getenv("GITHUB_TOKEN", "")
    DIRECTORY_GIST_ID: str = os.getenv("DIRECTORY_GIST_ID", "")

    HTTP_TIMEOUT: float = float(os.getenv("GIST_HTTP_TIMEOUT", "30.0"))

    # Chat settings
    COOLDOWN_SECONDS: int = _env_int("GIST_COOLDOWN_SECONDS", 120)
    POLL_INTERVAL_SECONDS: int = _env_int("GIST_POLL_INTERVAL_SECONDS", 30)

    # Limits
    MAX_DM_SLOTS: int = 5
    MAX_GC_SLOTS: int = 2
    MAX_GC_PARTICIPANTS: int = 5

    @property
    def keys_dir(self) -> Path:
        """Directory for cryptographic keys."""
        path = self.STORAGE_DIR / "keys"
        path.mkdir(parents=True, exist_ok=True)
        return path


# Global config instance
config = Config()
