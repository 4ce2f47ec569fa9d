"""
Runtime configuration

Environment-driven settings for the swarm control plane.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_path(name: str) -> Optional[Path]:
    raw = os.getenv(name)
    if not raw:
        return None
    return Path(raw).expanduser()


@dataclass
class RuntimeSettings:
    """Settings for the state store, ticker and simulation constants"""
    project_name: str = "anyre.quest"
    state_backend: str = "file"
    state_file: Path = Path("runtime-state.json")
    database_url: str = "sqlite:///./swarm_runtime.db"
    state_key: str = "state:v1"
    workspace_root: Path = field(default_factory=Path.cwd)
    tick_interval_ms: int = 1200
    heartbeat_obstacle_chance: float = 0.06
    base_success_chance: float = 0.84
    catch_up_on_request: bool = True
    catalog_file: Optional[Path] = None
    automation_root: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        workspace_root = _env_path("SWARM_WORKSPACE_ROOT") or Path.cwd()
        return cls(
            project_name=os.getenv("SWARM_PROJECT_NAME", "anyre.quest"),
            state_backend=os.getenv("SWARM_STATE_BACKEND", "file").strip().lower(),
            state_file=_env_path("SWARM_STATE_FILE") or Path("runtime-state.json"),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./swarm_runtime.db"),
            state_key=os.getenv("SWARM_STATE_KEY", "state:v1"),
            workspace_root=workspace_root.resolve(),
            tick_interval_ms=max(100, _env_int("SWARM_TICK_INTERVAL_MS", 1200)),
            heartbeat_obstacle_chance=_env_float("SWARM_HEARTBEAT_OBSTACLE_CHANCE", 0.06),
            base_success_chance=_env_float("SWARM_BASE_SUCCESS_CHANCE", 0.84),
            catch_up_on_request=os.getenv("SWARM_CATCH_UP_ON_REQUEST", "1") == "1",
            catalog_file=_env_path("SWARM_CATALOG_FILE"),
            automation_root=_env_path("SWARM_AUTOMATION_ROOT"),
        )
