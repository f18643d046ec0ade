"""Service configuration read from environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 7890
    reload: bool = False
    upload_dir: Path = Path("./data/uploads")
    output_dir: Path = Path("./data/output")
    max_upload_mb: int = 500
    workers: int = 4
    backend_url: str = "http://localhost:3000"
    backend_timeout_sec: float = 300.0
    retention_hours: float = 24.0
    sweep_interval_sec: float = 3600.0
    engines_file: Path | None = None
    shutdown_grace_sec: float = 10.0
    log_level: str = "INFO"
    # Caller identities allowed to use the /api/v1/admin routes.
    admin_users: frozenset[str] = frozenset()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        engines_file = env.get("ENGINES_FILE", "").strip()
        settings = cls(
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "7890")),
            reload=_flag(env.get("RELOAD", "false")),
            upload_dir=Path(env.get("UPLOAD_DIR", "./data/uploads")),
            output_dir=Path(env.get("OUTPUT_DIR", "./data/output")),
            max_upload_mb=int(env.get("MAX_UPLOAD_MB", "500")),
            workers=int(env.get("WORKERS", "4")),
            backend_url=env.get("BACKEND_URL", "http://localhost:3000"),
            backend_timeout_sec=float(env.get("BACKEND_TIMEOUT_SEC", "300")),
            retention_hours=float(env.get("RETENTION_HOURS", "24")),
            sweep_interval_sec=float(env.get("SWEEP_INTERVAL_SEC", "3600")),
            engines_file=Path(engines_file) if engines_file else None,
            shutdown_grace_sec=float(env.get("SHUTDOWN_GRACE_SEC", "10")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            admin_users=frozenset(u.strip() for u in env.get("ADMIN_USERS", "").split(",") if u.strip()),
        )
        if settings.workers < 1:
            raise ValueError("WORKERS must be at least 1")
        if settings.max_upload_mb < 1:
            raise ValueError("MAX_UPLOAD_MB must be at least 1")
        for name, value in (
            ("BACKEND_TIMEOUT_SEC", settings.backend_timeout_sec),
            ("RETENTION_HOURS", settings.retention_hours),
            ("SWEEP_INTERVAL_SEC", settings.sweep_interval_sec),
            ("SHUTDOWN_GRACE_SEC", settings.shutdown_grace_sec),
        ):
            if not value > 0:
                raise ValueError(f"{name} must be positive")
        return settings

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024
