"""Configuration loading for the worker engine."""

from worker_engine.config.settings import WorkerSettings, load_work_order

__all__ = ["WorkerSettings", "load_work_order"]
