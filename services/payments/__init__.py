"""Payments service helpers."""

from .gateway_client import (
    GatewayClient,
    GatewayError,
    GatewayNotConfiguredError,
    get_gateway_client,
)

__all__ = [
    "GatewayClient",
    "GatewayError",
    "GatewayNotConfiguredError",
    "get_gateway_client",
]
