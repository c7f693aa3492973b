"""Execution engine: classification, retry, checkpointing, verification and orchestration."""
