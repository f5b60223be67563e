"""Gateway RPC client — request/response calls over one WebSocket.

Protocol:
1. The server opens with a ``connect.challenge`` event carrying a nonce.
2. The client sends a ``connect`` request and waits for its response.
3. Every further call is a ``req`` frame with a unique id, answered by a
   ``res`` frame with the same id.

Each call is bounded by ``timeout`` whether or not the socket stays open.
Connection failures are raised immediately and never retried here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Callable, Mapping

import aiohttp

from reef import __version__
from reef.config.paths import resolve_gateway_url
from reef.gateway.auth import resolve_gateway_auth
from reef.gateway.models import CronJob

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 3
CLIENT_ID = "cli"
CLIENT_MODE = "cli"
ROLE = "operator"
SCOPES = ["operator.admin", "operator.approvals", "operator.pairing"]

DEFAULT_TIMEOUT = 5.0
# How long to wait for the server's challenge before connecting without a nonce
CHALLENGE_GRACE = 0.75


class GatewayError(Exception):
    """Base class for gateway failures."""


class GatewayConnectionError(GatewayError):
    """The socket could not be opened, or was lost."""


class GatewayTimeoutError(GatewayError):
    """No matching response arrived in time."""


class GatewayRequestError(GatewayError):
    """The gateway answered a call with ``ok: false``."""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(f"Gateway error: {code} - {message}")


class GatewayClient:
    """One logical gateway connection.

    Concurrent calls on the same client are safe; sharing one client across
    threads is not.
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        password: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.password = password
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._challenge: asyncio.Future | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def __aenter__(self) -> GatewayClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -- connection ----------------------------------------------------------

    async def connect(self) -> None:
        if self._connected:
            return

        loop = asyncio.get_running_loop()
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, autoping=True), self.timeout
            )
        except asyncio.TimeoutError as e:
            await self.close()
            raise GatewayTimeoutError(f"Gateway connection to {self.url} timed out") from e
        except (aiohttp.ClientError, OSError) as e:
            await self.close()
            raise GatewayConnectionError(f"Gateway connection failed: {e}") from e

        self._challenge = loop.create_future()
        self._reader = asyncio.create_task(self._read_loop())

        try:
            nonce = await asyncio.wait_for(asyncio.shield(self._challenge), CHALLENGE_GRACE)
        except asyncio.TimeoutError:
            nonce = None

        try:
            await self._request("connect", self._connect_params(nonce))
        except GatewayTimeoutError as e:
            await self.close()
            raise GatewayTimeoutError("Gateway connect handshake timed out") from e
        except GatewayError:
            await self.close()
            raise

        self._connected = True
        logger.debug("Connected to gateway at %s", self.url)

    def _connect_params(self, nonce: str | None) -> dict[str, Any]:
        params: dict[str, Any] = {
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": CLIENT_ID,
                "version": __version__,
                "platform": sys.platform,
                "mode": CLIENT_MODE,
            },
            "role": ROLE,
            "scopes": SCOPES,
        }
        if nonce:
            params["nonce"] = nonce

        auth = {}
        if self.token:
            auth["token"] = self.token
        if self.password:
            auth["password"] = self.password
        if auth:
            params["auth"] = auth
        return params

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        self._connected = False

        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.warning("Gateway reader stopped with an error", exc_info=True)
            self._reader = None

        try:
            if self._ws is not None:
                await self._ws.close()
                self._ws = None
        finally:
            if self._session is not None and self._owns_session:
                await self._session.close()
                self._session = None

    # -- frames --------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            self._connected = False
            self._fail_pending(GatewayConnectionError("Gateway connection closed"))

    def _dispatch(self, data: str) -> None:
        try:
            frame = json.loads(data)
        except ValueError:
            logger.debug("Ignoring non-JSON gateway frame")
            return
        if not isinstance(frame, dict):
            logger.debug("Ignoring gateway frame that is not an object")
            return

        if frame.get("type") == "event":
            if frame.get("event") == "connect.challenge":
                payload = frame.get("payload")
                nonce = payload.get("nonce") if isinstance(payload, dict) else None
                if self._challenge is not None and not self._challenge.done():
                    self._challenge.set_result(nonce)
            return

        request_id = frame.get("id")
        if frame.get("type") != "res" or not isinstance(request_id, str):
            return

        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return

        if frame.get("ok"):
            future.set_result(frame.get("payload"))
        else:
            error = frame.get("error")
            if not isinstance(error, dict):
                error = {}
            future.set_exception(
                GatewayRequestError(error.get("code", "unknown"), error.get("message", "no message"))
            )

    def _fail_pending(self, error: GatewayError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        if self._ws is None or self._ws.closed:
            raise GatewayConnectionError("Gateway connection closed")

        request_id = str(uuid.uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        logger.debug("gateway -> %s (%s)", method, request_id)

        try:
            await self._ws.send_json(
                {"type": "req", "id": request_id, "method": method, "params": params}
            )
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(f'Gateway call "{method}" timed out') from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise GatewayConnectionError(f"Gateway connection failed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    # -- calls ---------------------------------------------------------------

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if not self._connected:
            raise GatewayError("Gateway not connected. Call connect() first.")
        return await self._request(method, params or {})

    async def cron_add(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self.call("cron.add", params)

    async def cron_remove(self, job_id: str) -> None:
        await self.call("cron.remove", {"id": job_id})

    async def cron_update(self, job_id: str, patch: dict[str, Any]) -> None:
        await self.call("cron.update", {"id": job_id, "patch": patch})

    async def cron_list(self, include_disabled: bool = False) -> list[CronJob]:
        result = await self.call("cron.list", {"includeDisabled": include_disabled})
        return [CronJob.from_dict(job) for job in (result or {}).get("jobs") or []]


def make_gateway_factory(
    config: Mapping[str, Any] | None = None,
    gateway_url: str | None = None,
    gateway_token: str | None = None,
    gateway_password: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Callable[[], GatewayClient]:
    """Resolve endpoint and credentials once, return a builder of fresh clients.

    Raises ExplicitCredentialsRequiredError immediately for a URL override
    without explicit credentials.
    """
    auth = resolve_gateway_auth(
        gateway_url=gateway_url,
        gateway_token=gateway_token,
        gateway_password=gateway_password,
        config=config,
        env=env,
    )
    url = gateway_url or resolve_gateway_url(config, env)

    def factory() -> GatewayClient:
        return GatewayClient(url, token=auth.token, password=auth.password, timeout=timeout)

    return factory
