"""Background workers: auto-confirm sweep and daily reconciliation."""
from .auto_confirm_worker import start_auto_confirm_worker
from .reconciliation_worker import start_reconciliation_worker

__all__ = ["start_auto_confirm_worker", "start_reconciliation_worker"]
