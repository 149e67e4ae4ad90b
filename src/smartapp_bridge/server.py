"""aiohttp webhook server: the HTTP front door of the bridge.

Routes::

    POST /smartapp          lifecycle message → LifecycleHandler
    POST /                  lifecycle message (direct mode) or legacy event
    GET  /oauth/callback    OAuth collaborator
    GET  /health, GET /     status document
    *    anything else      404

Each request runs in its own handler task and shares no request-scoped
state, so one failing request never blocks the others.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Mapping, Optional, Protocol

import orjson
from aiohttp import web

from smartapp_bridge.classifier import classify, classify_legacy_event
from smartapp_bridge.config import WebhookConfig
from smartapp_bridge.errors import AuthorizationError, BridgeError, ValidationError
from smartapp_bridge.lifecycle import LifecycleHandler
from smartapp_bridge.models import NormalizedEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[NormalizedEvent], None]


class OAuthCallbackHandler(Protocol):
    """External collaborator completing the authorization-code exchange."""

    async def handle_callback(self, query: Mapping[str, str]) -> str:
        """Exchange the code in *query* and return an HTML page."""
        ...


def _dumps(obj) -> str:
    return orjson.dumps(obj).decode()


def json_response(data: dict, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


@web.middleware
async def error_handling_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    """Render any uncaught error as a JSON body instead of a bare 500."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BridgeError as exc:
        logger.warning("%s %s failed: %s", request.method, request.path, exc)
        return json_response({"error": str(exc)}, status=exc.status_code)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return json_response({"error": "Internal server error"}, status=500)


class WebhookServer:
    """Receives lifecycle messages, OAuth callbacks and legacy relay events.

    Parameters
    ----------
    config:
        Listen address, expected SmartApp id and transport mode.
    lifecycle:
        Lifecycle handler; required in direct mode.
    """

    def __init__(
        self,
        config: WebhookConfig,
        lifecycle: Optional[LifecycleHandler] = None,
    ) -> None:
        self._config = config
        self._lifecycle = lifecycle
        self._direct = config.use_direct_webhook
        self._oauth: Optional[OAuthCallbackHandler] = None
        self._event_handlers: list[EventHandler] = []
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._running = False

    @property
    def direct_webhook(self) -> bool:
        return self._direct

    @property
    def lifecycle(self) -> Optional[LifecycleHandler]:
        return self._lifecycle

    @property
    def is_running(self) -> bool:
        return self._running

    def set_oauth_handler(self, handler: OAuthCallbackHandler) -> None:
        self._oauth = handler

    def add_event_handler(self, handler: EventHandler) -> None:
        """Register a receiver for events posted to the legacy endpoint."""
        self._event_handlers.append(handler)

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[error_handling_middleware])
        app.router.add_post("/smartapp", self._handle_smartapp)
        if self._direct:
            app.router.add_post("/", self._handle_smartapp)
        else:
            app.router.add_post("/", self._handle_device_event)
        app.router.add_get("/", self._handle_health)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/oauth/callback", self._handle_oauth_callback)
        app.router.add_route("*", "/{tail:.*}", self._handle_not_found)
        return app

    async def start(self) -> None:
        """Bind and start serving (non-blocking)."""
        if self._running:
            logger.warning("Webhook server already running")
            return
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        self._running = True

        logger.info("Webhook server listening on %s:%d", self._config.host, self._config.port)
        if self._direct:
            server_url = self._config.server_url or "<server_url not configured>"
            logger.info("SmartApp webhook endpoint: %s/smartapp", server_url)

    async def stop(self) -> None:
        if not self._running:
            return
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._running = False
        logger.info("Webhook server stopped")

    # ── handlers ────────────────────────────────────────────────────

    async def _handle_smartapp(self, request: web.Request) -> web.Response:
        if self._lifecycle is None:
            logger.error("SmartApp request received but no lifecycle handler is configured")
            return json_response({"error": "SmartApp handler not initialized"}, status=500)

        raw = await request.read()
        try:
            message = classify(raw)
            self._check_app_id(message.app_id)
        except ValidationError as exc:
            logger.error("Invalid SmartApp request: %s", exc)
            return json_response({"error": f"Invalid request body: {exc}"}, status=400)
        except AuthorizationError as exc:
            logger.warning("Rejected SmartApp request: %s", exc)
            return json_response({"error": "Invalid appId"}, status=403)

        logger.debug("SmartApp request: %s", message.lifecycle.value)
        response = await self._lifecycle.handle(message)
        return json_response(response.to_dict(), status=response.status_code or 200)

    async def _handle_device_event(self, request: web.Request) -> web.Response:
        raw = await request.read()
        try:
            event = classify_legacy_event(raw)
        except ValidationError as exc:
            logger.error("Error parsing device event: %s", exc)
            return json_response({"error": str(exc)}, status=400)

        for handler in self._event_handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Error in event handler")
        return web.Response(status=200)

    async def _handle_oauth_callback(self, request: web.Request) -> web.Response:
        if self._oauth is None:
            logger.error("OAuth callback received but no auth handler registered")
            return web.Response(
                status=500,
                text="<h1>Error: OAuth handler not initialized</h1>",
                content_type="text/html",
            )
        try:
            html = await self._oauth.handle_callback(dict(request.query))
        except Exception:
            logger.exception("OAuth callback error")
            return web.Response(
                status=500,
                text="<h1>Authentication failed</h1><p>Please try again.</p>",
                content_type="text/html",
            )
        return web.Response(status=200, text=html, content_type="text/html")

    async def _handle_health(self, request: web.Request) -> web.Response:
        return json_response({"status": "ok", "directWebhook": self._direct})

    async def _handle_not_found(self, request: web.Request) -> web.Response:
        return json_response({"error": "Not found"}, status=404)

    def _check_app_id(self, app_id: Optional[str]) -> None:
        expected = self._config.smartapp_id
        if expected and app_id != expected:
            raise AuthorizationError(f"appId {app_id!r} does not match the configured SmartApp")
