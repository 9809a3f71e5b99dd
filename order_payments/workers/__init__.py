"""Background workers."""
from .outbox_publisher import main, run_worker

__all__ = ["main", "run_worker"]
