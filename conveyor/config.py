import os
from typing import Any, Optional


def _parse_csv(value: Optional[str]) -> Optional[set[str]]:
    if not value:
        return None
    return {entry.strip().lower() for entry in value.split(",") if entry.strip()}


class Config:
    SECRET_KEY: str = (
        os.environ.get("SECRET_KEY") or "conveyor-secret-key-change-in-production"
    )
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL") or "INFO"

    DEFAULT_TIMEOUT_MS: int = int(os.environ.get("CONVEYOR_DEFAULT_TIMEOUT_MS") or 300000)
    RETRY_DELAY_SECONDS: float = float(os.environ.get("CONVEYOR_RETRY_DELAY_SECONDS") or 1.0)
    KILL_GRACE_SECONDS: float = float(os.environ.get("CONVEYOR_KILL_GRACE_SECONDS") or 5.0)

    # "advisory" keeps the pipeline moving past approval stages, "blocking"
    # suspends the stage loop until the stage is approved or rejected.
    APPROVAL_MODE: str = os.environ.get("CONVEYOR_APPROVAL_MODE") or "advisory"

    # None means every command may run.
    COMMAND_ALLOWLIST: Optional[set[str]] = _parse_csv(
        os.environ.get("CONVEYOR_COMMAND_ALLOWLIST")
    )

    PIPELINES_DIR: str = os.environ.get("CONVEYOR_PIPELINES_DIR") or os.path.join(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "pipelines"
    )

    @staticmethod
    def init_app(app: Any) -> None:
        os.makedirs(Config.PIPELINES_DIR, exist_ok=True)
