"""Gateway — the orchestrator's scheduler endpoint, reached over WebSocket RPC."""

from reef.gateway.auth import ExplicitCredentialsRequiredError, GatewayAuth, resolve_gateway_auth
from reef.gateway.client import (
    GatewayClient,
    GatewayConnectionError,
    GatewayError,
    GatewayRequestError,
    GatewayTimeoutError,
    make_gateway_factory,
)
from reef.gateway.models import UNREACHABLE, CronJob, LiveJobs, Unreachable, build_cron_add_params

__all__ = [
    "CronJob",
    "ExplicitCredentialsRequiredError",
    "GatewayAuth",
    "GatewayClient",
    "GatewayConnectionError",
    "GatewayError",
    "GatewayRequestError",
    "GatewayTimeoutError",
    "LiveJobs",
    "UNREACHABLE",
    "Unreachable",
    "build_cron_add_params",
    "make_gateway_factory",
    "resolve_gateway_auth",
]
