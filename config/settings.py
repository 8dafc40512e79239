"""
Application settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database ─────────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./mrag_connect.db"

    # ── Security Secrets ──────────────────────────────────────────────────
    token_encryption_key: str = ""      # Fernet key for encrypting tokens and client secrets at rest

    # ── OAuth callback listener ───────────────────────────────────────────
    oauth_callback_host: str = "127.0.0.1"
    oauth_callback_port: int = 18080            # 0 = any free port
    oauth_callback_port_range_start: int = 18081
    oauth_callback_port_range_end: int = 18099
    oauth_callback_timeout_seconds: float = 300.0
    oauth_server_shutdown_grace_seconds: float = 5.0

    # ── OAuth HTTP calls ─────────────────────────────────────────────────
    oauth_token_timeout_seconds: float = 30.0
    oauth_userinfo_timeout_seconds: float = 10.0
    token_refresh_buffer_seconds: int = 120

    debug: bool = False

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }

    def callback_port_range(self) -> tuple[int, int]:
        """Return the (start, end) port range scanned when the fixed port is busy."""
        return self.oauth_callback_port_range_start, self.oauth_callback_port_range_end


config = Settings()
