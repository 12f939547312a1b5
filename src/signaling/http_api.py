"""HTTP endpoints served alongside the relay.

Routes:
- GET  /healthz                       liveness check ("ok")
- POST /api/asl/classify              classify one still frame via the worker
- POST /api/gemini/correct-spelling   spelling/grammar correction
- GET  /metrics                       Prometheus exposition format
- GET  /metrics/summary               JSON summary for dashboards

Every response carries permissive CORS headers so the browser client can call
the API from another origin.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from src.classifier.errors import ClassifierError
from src.classifier.supervisor import ClassifierWorkerSupervisor
from src.common.metrics import MetricsCollector
from src.signaling.config import HttpConfig
from src.signaling.text_correction import (
    TextCorrectionError,
    TextCorrectionQuotaError,
    TextCorrector,
)

logger = logging.getLogger(__name__)

type Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type"


def create_cors_middleware(allow_origin: str = "*") -> Any:
    """Build middleware that adds CORS headers and answers preflight requests."""
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
    }

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=200, headers=headers)

        try:
            response = await handler(request)
        except web.HTTPException as exc:
            exc.headers.update(headers)
            raise

        response.headers.update(headers)
        return response

    return cors_middleware


class RelayHttpHandler:
    """Request handlers for the relay's HTTP API.

    Args:
        supervisor: Classifier worker supervisor (shared, injected)
        metrics: Metrics collector (shared, injected)
        corrector: Text corrector, or None when correction is not configured
    """

    def __init__(
        self,
        supervisor: ClassifierWorkerSupervisor,
        metrics: MetricsCollector,
        corrector: TextCorrector | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.metrics = metrics
        self.corrector = corrector
        self.start_time = time.time()

    async def healthz(self, request: web.Request) -> web.Response:
        """Liveness check."""
        return web.Response(text="ok", status=200)

    async def classify(self, request: web.Request) -> web.Response:
        """Classify a still frame.

        Request: ``{"image": "<base64 or data URL>"}``

        Returns:
            200 OK: ``{"letter": str, "confidence": float}``
            400 Bad Request: ``{"error": "Missing image data"}``
            500 Internal Server Error: ``{"error": str}``
        """
        body = await _read_json(request)
        image = body.get("image") if isinstance(body, dict) else None
        if not isinstance(image, str) or not image:
            logger.info("ASL classification rejected: missing image data")
            return web.json_response({"error": "Missing image data"}, status=400)

        logger.debug("ASL classification request received", extra={"bytes": len(image)})

        try:
            result = await self.supervisor.classify(image)
        except ClassifierError as e:
            logger.error(
                "ASL classification failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            return web.json_response(
                {"error": str(e) or "ASL classification failed"}, status=500
            )

        logger.info(
            "ASL classification result",
            extra={"letter": result["letter"], "confidence": result["confidence"]},
        )
        return web.json_response(dict(result))

    async def correct_spelling(self, request: web.Request) -> web.Response:
        """Correct spelling and grammar of accumulated text.

        Request: ``{"text": str}``

        Returns:
            200 OK: ``{"originalText": str, "correctedText": str}``
            400 Bad Request: missing or empty text
            429 Too Many Requests: upstream quota exceeded (with ``retryAfter``)
            500 Internal Server Error: upstream failure
            503 Service Unavailable: correction not configured
        """
        if self.corrector is None:
            return web.json_response(
                {
                    "error": "Gemini API not configured. "
                    "Please set GEMINI_API_KEY environment variable."
                },
                status=503,
            )

        body = await _read_json(request)
        text = body.get("text") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            return web.json_response({"error": "Missing or empty text"}, status=400)

        sanitized = text.strip()

        try:
            corrected = await self.corrector.correct(sanitized)
        except TextCorrectionQuotaError as e:
            logger.warning(
                "Spelling correction quota exceeded",
                extra={"retry_after_s": e.retry_after_s},
            )
            return web.json_response(
                {
                    "error": "Gemini API quota exceeded",
                    "message": (
                        f"Rate limit exceeded. Please wait {e.retry_after_s} seconds "
                        "before trying again."
                    ),
                    "retryAfter": e.retry_after_s,
                },
                status=429,
            )
        except TextCorrectionError as e:
            logger.error("Spelling correction failed", extra={"error": str(e)})
            return web.json_response(
                {
                    "error": "Failed to correct spelling",
                    "message": str(e) or "Unknown error occurred",
                },
                status=500,
            )

        logger.info("Spelling corrected", extra={"original": sanitized, "corrected": corrected})
        return web.json_response({"originalText": sanitized, "correctedText": corrected})

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
        """
        try:
            metrics_text = self.metrics.export_prometheus()
            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                headers={"X-Prometheus-Format": "0.0.4"},
                status=200,
            )
        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary.

        Returns:
            200 OK: Metrics summary in JSON format
        """
        return web.json_response(
            {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "metrics": self.metrics.get_summary(),
                "classifier": {
                    "state": self.supervisor.state.value,
                    "pid": self.supervisor.pid,
                    "pending": self.supervisor.pending_count,
                },
            },
            status=200,
        )


async def _read_json(request: web.Request) -> Any:
    """Parse the request body as JSON, returning None when it is not JSON."""
    if not request.can_read_body:
        return None
    try:
        return await request.json()
    except ValueError:
        return None


def create_http_app(
    supervisor: ClassifierWorkerSupervisor,
    metrics: MetricsCollector,
    corrector: TextCorrector | None = None,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the aiohttp application with all relay HTTP routes.

    Args:
        supervisor: Classifier worker supervisor
        metrics: Metrics collector
        corrector: Optional text corrector
        config: HTTP settings (body limit, CORS origin)

    Returns:
        Configured application (not yet started)
    """
    config = config or HttpConfig()
    app = web.Application(
        client_max_size=config.max_body_bytes,
        middlewares=[create_cors_middleware(config.cors_allow_origin)],
    )
    handler = RelayHttpHandler(supervisor, metrics, corrector)

    app.router.add_get("/healthz", handler.healthz)
    app.router.add_post("/api/asl/classify", handler.classify)
    app.router.add_post("/api/gemini/correct-spelling", handler.correct_spelling)
    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info(
        "HTTP endpoints configured: /healthz, /api/asl/classify, "
        "/api/gemini/correct-spelling, /metrics, /metrics/summary"
    )
    return app
