"""Payment gateway integration (Stripe)."""

from .stripe_client import PaymentGateway, StripeClient, call_gateway, get_gateway

__all__ = [
    "PaymentGateway",
    "StripeClient",
    "call_gateway",
    "get_gateway",
]
