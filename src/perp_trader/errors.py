"""Error taxonomy for the trading engine."""

from __future__ import annotations


class PerpTraderError(Exception):
    """Base error for all engine failures."""


class FatalConfigError(PerpTraderError):
    """Startup configuration is missing or inconsistent; the process must halt."""


class ValidationError(PerpTraderError):
    """Order parameters violate exchange or risk constraints. Never retried."""

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__(", ".join(self.reasons) or "validation_failed")


class StateInvariantViolation(PerpTraderError):
    """A computed state change would break a position invariant."""


class GatewayError(PerpTraderError):
    """Base exchange gateway failure."""


class TransientGatewayError(GatewayError):
    """Network, timeout or rate-limit failure; safe to retry."""


class GatewayAuthError(GatewayError):
    """Credentials rejected by the exchange."""


class OrderRejectedError(GatewayError):
    """Exchange refused the request (bad params, insufficient margin, ...)."""


class InsufficientMarginError(OrderRejectedError):
    """Exchange refused an order for lack of margin (Binance-style code -2019)."""


class OracleError(PerpTraderError):
    """Signal oracle transport or request failure."""
