"""External integrations for payment processing."""
from .easykash import CallbackStatus, CircuitBreaker, GatewayClient, VerifiedCallback

__all__ = ["CallbackStatus", "CircuitBreaker", "GatewayClient", "VerifiedCallback"]
