"""Version control access."""

from worker_engine.git.client import GitClient

__all__ = ["GitClient"]
