"""External integrations: inbound webhooks and the outbound payout provider."""
# webhooks imports core.escrow, which imports this package: import it by module path
from .payout_client import CircuitBreaker, PayoutClient, TransferReceipt

__all__ = ["CircuitBreaker", "PayoutClient", "TransferReceipt"]
