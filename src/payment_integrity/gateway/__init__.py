from .base import (
    PaymentGateway,
    GatewayCallback,
    GatewayTransaction,
    GatewayTransactionStatus,
    InitiatedPayment,
    RESULT_CODE_DESCRIPTIONS,
    describe_result_code,
    to_minor_units,
    to_major_units,
)
from .mpesa import MpesaGateway, parse_stk_callback, format_phone_number
from .simulator import SimulatorGateway, SimulatorConfig, SimulatedTransaction


def get_gateway(settings) -> PaymentGateway:
    """Build the gateway named by ``settings.gateway``.

    Raises:
        ValueError: If the gateway is unknown or not configured.
    """
    if settings.gateway == "mpesa":
        return MpesaGateway(settings.mpesa, timeout=settings.gateway_lookup_timeout_seconds)
    if settings.gateway == "simulator":
        return SimulatorGateway()
    raise ValueError(f"Unknown payment gateway: {settings.gateway}")


__all__ = [
    "PaymentGateway",
    "GatewayCallback",
    "GatewayTransaction",
    "GatewayTransactionStatus",
    "InitiatedPayment",
    "RESULT_CODE_DESCRIPTIONS",
    "describe_result_code",
    "to_minor_units",
    "to_major_units",
    "MpesaGateway",
    "parse_stk_callback",
    "format_phone_number",
    "SimulatorGateway",
    "SimulatorConfig",
    "SimulatedTransaction",
    "get_gateway",
]
