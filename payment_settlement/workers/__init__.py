"""Background workers for async processing."""
from .maintenance_worker import prune_rate_limit_records, start_maintenance_worker
from .outbox_publisher import start_outbox_publisher

__all__ = ["prune_rate_limit_records", "start_maintenance_worker", "start_outbox_publisher"]
