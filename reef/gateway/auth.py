"""Gateway credential resolution.

For the local gateway, credentials come from (in order) explicit options,
the environment, then the runtime config. A remote gateway URL never falls
back to local credentials: it must be given explicit ones.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping


class ExplicitCredentialsRequiredError(Exception):
    """A gateway URL override was given without an explicit token or password."""

    def __init__(self) -> None:
        super().__init__("Gateway URL override requires --gateway-token or --gateway-password.")


@dataclass
class GatewayAuth:
    token: str | None = None
    password: str | None = None


def resolve_gateway_auth(
    gateway_url: str | None = None,
    gateway_token: str | None = None,
    gateway_password: str | None = None,
    config: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> GatewayAuth:
    if gateway_url:
        if not gateway_token and not gateway_password:
            raise ExplicitCredentialsRequiredError()
        return GatewayAuth(token=gateway_token, password=gateway_password)

    e = os.environ if env is None else env
    auth = ((config or {}).get("gateway") or {}).get("auth") or {}

    token = gateway_token or e.get("OPENCLAW_GATEWAY_TOKEN") or auth.get("token")
    password = gateway_password or e.get("OPENCLAW_GATEWAY_PASSWORD") or auth.get("password")
    return GatewayAuth(token=token or None, password=password or None)
