"""Stripe API client - wrapper for the gateway operations the migration engine needs."""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable, Dict, Optional, Protocol

import stripe

from app.core.config import settings
from app.core.exceptions import ConfigurationError, GatewayError
from app.core.logging_config import get_logger
from app.utils.enums import ErrorCategory

logger = get_logger(__name__)


class PaymentGateway(Protocol):
    """Operations consumed by the engine. Implementations are blocking."""

    def create_product(self, name: str, active: bool = True) -> str: ...

    def create_price(
        self,
        amount: int,
        currency: str,
        product: str,
        interval: str = "month",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str: ...

    def update_subscription_price(self, subscription_ref: str, new_price_ref: str) -> Any: ...


class StripeClient:
    """Wrapper for Stripe API calls."""

    def __init__(self, api_key: Optional[str] = None):
        api_key = api_key or settings.STRIPE_SECRET_KEY
        if not api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = api_key
        logger.info("Stripe client initialized")

    def create_product(self, name: str, active: bool = True) -> str:
        """Create a Stripe product and return its id."""
        try:
            product = stripe.Product.create(name=name, active=active)
            logger.info(f"Stripe product created: {product.id} ({name})")
            return product.id
        except stripe.StripeError as e:
            logger.error(f"Stripe product creation failed for {name}: {e}")
            raise

    def create_price(
        self,
        amount: int,
        currency: str,
        product: str,
        interval: str = "month",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create an immutable recurring price.

        Args:
            amount: Unit amount in minor currency units
            currency: ISO currency code (case-insensitive)
            product: Stripe product id
            interval: Billing interval ("month" or "year")
            metadata: Extra key/values stored on the price

        Returns:
            The new Stripe price id
        """
        try:
            price = stripe.Price.create(
                unit_amount=amount,
                currency=currency.lower(),
                product=product,
                recurring={"interval": interval},
                metadata=metadata or {},
            )
            logger.info(f"Stripe price created: {price.id} amount={amount} {currency}")
            return price.id
        except stripe.StripeError as e:
            logger.error(f"Stripe price creation failed for product {product}: {e}")
            raise

    def update_subscription_price(self, subscription_ref: str, new_price_ref: str) -> stripe.Subscription:
        """Switch a subscription's single item to a new price without proration.

        The change takes effect from the next billing cycle.
        """
        try:
            subscription = stripe.Subscription.retrieve(subscription_ref)
            items = subscription["items"]["data"]
            if not items:
                raise GatewayError(
                    f"Stripe subscription {subscription_ref} has no items",
                    category=ErrorCategory.payment,
                )
            updated = stripe.Subscription.modify(
                subscription_ref,
                items=[{"id": items[0]["id"], "price": new_price_ref}],
                proration_behavior="none",
            )
            logger.info(f"Stripe subscription {subscription_ref} moved to price {new_price_ref}")
            return updated
        except stripe.StripeError as e:
            logger.error(f"Failed to update Stripe subscription {subscription_ref}: {e}")
            raise


def classify_stripe_error(exc: stripe.StripeError) -> ErrorCategory:
    if isinstance(exc, stripe.APIConnectionError):
        return ErrorCategory.network
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return ErrorCategory.permission
    if isinstance(exc, stripe.InvalidRequestError):
        return ErrorCategory.validation
    return ErrorCategory.payment


async def call_gateway(
    fn: Callable[..., Any],
    *args: Any,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> Any:
    """Run a blocking gateway call in a worker thread with a hard timeout.

    Any failure is re-raised as ``GatewayError`` with its category decided here.
    """
    timeout = timeout if timeout is not None else settings.STRIPE_CALL_TIMEOUT_SECONDS
    name = getattr(fn, "__name__", "gateway call")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(partial(fn, *args, **kwargs)), timeout=timeout
        )
    except asyncio.TimeoutError:
        raise GatewayError(
            f"Gateway call {name} timed out after {timeout:g}s",
            category=ErrorCategory.network,
        )
    except GatewayError:
        raise
    except stripe.StripeError as e:
        message = getattr(e, "user_message", None) or str(e)
        raise GatewayError(
            f"Stripe error: {message}",
            category=classify_stripe_error(e),
            raw_message=str(e),
        )
    except (ConnectionError, OSError) as e:
        raise GatewayError(
            f"Gateway connection error: {e}",
            category=ErrorCategory.network,
        )


_default_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """Lazily build the process-wide Stripe client."""
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = StripeClient()
    return _default_gateway
