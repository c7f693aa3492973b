"""worker-engine: resumable, self-verifying execution of work orders."""

__version__ = "0.1.0"
