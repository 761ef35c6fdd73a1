"""Preview reverse proxy.

Serves ``/preview/<app_id>/<path>`` by forwarding to the app's container on
its published host port, starting the container first when it is not
running. HTML, JavaScript and CSS responses have their root-relative asset
references rewritten to stay under the preview prefix; everything else is
streamed through untouched.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from mcp_apphost import __version__
from mcp_apphost.config import Settings
from mcp_apphost.managers.app_resolver import AppResolver
from mcp_apphost.managers.containerization_service import ContainerizationService
from mcp_apphost.managers.lifecycle_manager import ContainerLifecycleManager
from mcp_apphost.preview.rewrite import rewrite_body, should_rewrite
from mcp_apphost.utils import get_logger
from mcp_apphost.utils.exceptions import (
    AlreadyStartingError,
    AppNotFoundError,
    PortExhaustedError,
)
from mcp_apphost.utils.metrics_collector import MetricsCollector

logger = get_logger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; PreviewProxy/1.0)"
FORWARDED_HEADERS = ("accept-language", "cookie")
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
# The rewritten body is re-encoded, so the upstream framing no longer applies
REWRITE_DROPPED_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}
STARTING_RETRY_AFTER_S = 2


class PreviewProxy:
    """Lazily starts app containers and proxies preview requests to them."""

    def __init__(
        self,
        settings: Settings,
        service: ContainerizationService,
        lifecycle: ContainerLifecycleManager,
        resolver: AppResolver,
        client: httpx.AsyncClient,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize preview proxy.

        Args:
            settings: Application settings (upstream host, timeouts)
            service: Containerization service
            lifecycle: Lifecycle manager for ports, activity and the starting lock
            resolver: Resolves app IDs for lazy starts
            client: HTTP client used for upstream requests
            metrics: Metrics collector for request outcomes
            sleep: Coroutine used for the post-start settle delay
        """
        self.settings = settings
        self.service = service
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.client = client
        self.metrics = metrics
        self._sleep = sleep

    def routes(self) -> List[Route]:
        """Starlette routes serving the preview prefix."""
        return [
            Route("/preview", self.info, methods=["GET"]),
            Route("/preview/{app_id}/{rest:path}", self.handle, methods=["GET"]),
            Route("/preview/{app_id}", self.handle, methods=["GET"]),
        ]

    async def info(self, request: Request) -> JSONResponse:
        """Describe the preview service: URL scheme and host port range."""
        return JSONResponse(
            {
                "service": "Container Preview Proxy",
                "version": __version__,
                "enabled": self.service.is_enabled(),
                "engine": self.service.engine_type,
                "usage": "/preview/<app_id>/[path]",
                "examples": [
                    "/preview/1/",
                    "/preview/2/index.html",
                    "/preview/3/assets/logo.png",
                ],
                "portRange": {
                    "min": self.settings.port_range_start,
                    "max": self.settings.port_range_end,
                },
            }
        )

    async def handle(self, request: Request) -> Response:
        """Starlette endpoint for both preview routes."""
        app_id = request.path_params["app_id"]
        rest = request.path_params.get("rest", "")
        try:
            response = await self.proxy(app_id, rest, request)
        except Exception as e:
            logger.error(
                "Preview proxy error", extra={"app_id": app_id, "error": str(e)}, exc_info=True
            )
            response = self._error(
                500, f"Preview proxy error: {e}", app_id, self.lifecycle.get_port(app_id)
            )
        if self.metrics:
            self.metrics.record_proxy_request(response.status_code)
        return response

    async def proxy(self, app_id: str, path: str, request: Request) -> Response:
        """
        Proxy one preview request.

        Args:
            app_id: Application ID from the URL
            path: Path below ``/preview/<app_id>/``
            request: Incoming request

        Returns:
            Upstream response, or a JSON error carrying ``appId`` and ``port``
        """
        self.lifecycle.record_activity(app_id)

        if not self.service.is_enabled():
            return self._error(503, "Containerization is disabled", app_id, None)

        if not await self.service.is_container_running(app_id):
            error = await self._start(app_id)
            if error is not None:
                return error

        port = await self._resolve_port(app_id)
        return await self._forward(app_id, port, path, request)

    async def _start(self, app_id: str) -> Optional[Response]:
        """Start the app's container; returns an error response on failure."""
        logger.info("Container not running, starting for preview", extra={"app_id": app_id})
        try:
            with self.lifecycle.starting(app_id):
                if await self.service.container_exists(app_id):
                    await self.service.remove_container(app_id, force=True)
                    self.lifecycle.release_port(app_id)

                app = await self.resolver.resolve(app_id)
                port = self.lifecycle.allocate_port(app_id, force_new=True)
                result = await self.service.run_container(
                    app_id,
                    app.path,
                    port=port,
                    install_command=app.install_command,
                    start_command=app.start_command,
                )
                if not result.success:
                    self.lifecycle.release_port(app_id)
                    logger.error(
                        "Failed to start container for preview",
                        extra={"app_id": app_id, "port": port, "error": result.error},
                    )
                    return self._error(
                        500, result.message, app_id, port, details=result.error
                    )

        except AlreadyStartingError as e:
            return self._error(
                409,
                str(e),
                app_id,
                self.lifecycle.get_port(app_id),
                headers={"Retry-After": str(STARTING_RETRY_AFTER_S)},
            )
        except AppNotFoundError as e:
            return self._error(404, str(e), app_id, None)
        except PortExhaustedError as e:
            return self._error(503, str(e), app_id, None)

        self.lifecycle.mark_as_started(app_id)
        await self._sleep(self.settings.preview_settle_delay_s)
        return None

    async def _resolve_port(self, app_id: str) -> int:
        status = await self.service.get_container_status(app_id)
        return status.port or self.lifecycle.get_port(app_id) or self.service.default_port

    def _upstream_headers(self, request: Request, host: str) -> dict:
        headers = {
            "user-agent": request.headers.get("user-agent", DEFAULT_USER_AGENT),
            "accept": request.headers.get("accept", "*/*"),
            "host": host,
        }
        for name in FORWARDED_HEADERS:
            value = request.headers.get(name)
            if value is not None:
                headers[name] = value
        return headers

    async def _forward(self, app_id: str, port: int, path: str, request: Request) -> Response:
        upstream_host = f"{self.settings.preview_upstream_host}:{port}"
        url = f"http://{upstream_host}/{path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"

        upstream_request = self.client.build_request(
            "GET", url, headers=self._upstream_headers(request, upstream_host)
        )
        timeout = self.settings.preview_timeout_s
        started = time.perf_counter()

        try:
            upstream = await asyncio.wait_for(
                self.client.send(upstream_request, stream=True), timeout=timeout
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            logger.warning("Upstream timed out", extra={"app_id": app_id, "port": port, "url": url})
            return self._error(504, "Preview request timed out", app_id, port)
        except httpx.ConnectError as e:
            logger.warning(
                "Upstream connection failed", extra={"app_id": app_id, "port": port, "error": str(e)}
            )
            return self._error(502, "Could not connect to the app's dev server", app_id, port)
        except Exception as e:
            logger.error("Preview proxy error", extra={"app_id": app_id, "port": port, "error": str(e)})
            return self._error(500, f"Preview proxy error: {e}", app_id, port)
        finally:
            if self.metrics:
                self.metrics.record_upstream_duration(time.perf_counter() - started)

        content_type = upstream.headers.get("content-type")
        if not should_rewrite(content_type):
            response = StreamingResponse(
                upstream.aiter_raw(),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
            self._copy_headers(upstream, response, HOP_BY_HOP_HEADERS)
            return response

        try:
            body = await asyncio.wait_for(upstream.aread(), timeout=timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            return self._error(504, "Preview request timed out", app_id, port)
        except httpx.HTTPError as e:
            return self._error(502, f"Upstream read failed: {e}", app_id, port)
        finally:
            await upstream.aclose()

        text = body.decode(upstream.encoding or "utf-8", errors="replace")
        response = Response(
            content=rewrite_body(text, app_id, content_type).encode("utf-8"),
            status_code=upstream.status_code,
        )
        self._copy_headers(upstream, response, REWRITE_DROPPED_HEADERS)
        return response

    @staticmethod
    def _copy_headers(upstream: httpx.Response, response: Response, dropped: frozenset) -> None:
        for name, value in upstream.headers.multi_items():
            if name.lower() in dropped or name.lower() == "content-type":
                continue
            response.headers.append(name, value)
        content_type = upstream.headers.get("content-type")
        if content_type:
            response.headers["content-type"] = content_type

    @staticmethod
    def _error(
        status_code: int,
        message: str,
        app_id: str,
        port: Optional[int],
        details: Optional[str] = None,
        headers: Optional[dict] = None,
    ) -> JSONResponse:
        content = {"error": message, "appId": app_id, "port": port}
        if details:
            content["details"] = details
        return JSONResponse(content, status_code=status_code, headers=headers)
