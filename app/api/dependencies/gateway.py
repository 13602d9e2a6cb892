from app.services.payments import PaymentGateway, get_gateway


def get_payment_gateway() -> PaymentGateway:
    """Resolve the configured payment gateway (Stripe unless overridden)."""
    return get_gateway()
