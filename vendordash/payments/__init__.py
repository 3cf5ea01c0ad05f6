"""Payment gateway boundary."""

from .checkout_bridge import BridgeCheckoutRuntime
from .gateway import CheckoutOptions, CheckoutRuntime, CheckoutWidget, PaymentGatewayClient

__all__ = [
    "BridgeCheckoutRuntime",
    "CheckoutOptions",
    "CheckoutRuntime",
    "CheckoutWidget",
    "PaymentGatewayClient",
]
