"""Relay server: composition root and entry point.

Builds the shared components once and injects them:
- RoomRegistry + SignalingHub behind the WebSocket transport (/ws)
- ClassifierWorkerSupervisor + text corrector behind the HTTP API
- one MetricsCollector recorded into by all of them

Each accepted WebSocket connection gets its own task running
``SignalingHub.run_session``.
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import AppRunner, TCPSite
from dotenv import load_dotenv

from src.classifier.supervisor import ClassifierWorkerSupervisor
from src.common.metrics import MetricsCollector
from src.signaling.config import RelayConfig, TextCorrectionConfig
from src.signaling.http_api import create_http_app
from src.signaling.hub import SignalingHub
from src.signaling.room_registry import RoomRegistry
from src.signaling.session import Session
from src.signaling.text_correction import GeminiTextCorrector, TextCorrector
from src.signaling.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "relay.yaml"


def build_text_corrector(config: TextCorrectionConfig) -> TextCorrector | None:
    """Create the configured text corrector, or None when disabled."""
    if not config.api_key:
        logger.warning("GEMINI_API_KEY not set, spelling correction will be disabled")
        return None
    if not config.enabled:
        logger.info("Spelling correction disabled in configuration (text_correction.enabled)")
        return None

    logger.info("Gemini text correction enabled", extra={"model": config.model})
    return GeminiTextCorrector(config)


class RelayServer:
    """Owns the relay's transports and shared services.

    Args:
        config: Relay configuration
        supervisor: Optional pre-built supervisor (for testing)
        corrector: Optional text corrector overriding the configured one
    """

    def __init__(
        self,
        config: RelayConfig,
        supervisor: ClassifierWorkerSupervisor | None = None,
        corrector: TextCorrector | None = None,
    ) -> None:
        self.config = config
        self.metrics = MetricsCollector()
        self.registry = RoomRegistry()
        self.hub = SignalingHub(self.registry, self.metrics)

        classifier_config = config.classifier
        self.supervisor = supervisor or ClassifierWorkerSupervisor(
            command=classifier_config.command,
            request_timeout_s=classifier_config.request_timeout_s,
            startup_timeout_s=classifier_config.startup_timeout_s,
            ready_sentinel=classifier_config.ready_sentinel,
            shutdown_grace_s=classifier_config.shutdown_grace_s,
            metrics=self.metrics,
        )
        self.corrector = corrector or build_text_corrector(config.text_correction)

        ws_config = config.websocket
        self.transport = WebSocketTransport(
            host=ws_config.host,
            port=ws_config.port,
            path=ws_config.path,
            max_connections=ws_config.max_connections,
            max_message_bytes=ws_config.max_message_bytes,
        )

        self._runner: AppRunner | None = None
        self._accept_task: asyncio.Task[None] | None = None
        self._session_tasks: set[asyncio.Task[None]] = set()

    @property
    def session_count(self) -> int:
        """Number of session tasks still running."""
        return len(self._session_tasks)

    async def start(self) -> None:
        """Start the WebSocket relay, the HTTP API and the accept loop.

        Raises:
            OSError: If a port cannot be bound
        """
        await self.transport.start()
        logger.info("WebSocket transport started", extra={"port": self.transport.port})

        http_config = self.config.http
        app = create_http_app(self.supervisor, self.metrics, self.corrector, http_config)
        self._runner = AppRunner(app)
        await self._runner.setup()
        site = TCPSite(self._runner, http_config.host, http_config.port)
        try:
            await site.start()
        except OSError:
            await self._runner.cleanup()
            await self.transport.stop()
            raise
        logger.info("HTTP server started", extra={"port": http_config.port})

        self._accept_task = asyncio.create_task(self._accept_loop())
        logger.info("Relay server ready")

    async def serve_forever(self) -> None:
        """Block until the accept loop ends (cancellation or transport error)."""
        if self._accept_task is None:
            raise RuntimeError("Relay server is not started")
        await self._accept_task

    async def _accept_loop(self) -> None:
        while True:
            transport_session = await self.transport.accept_session()
            logger.info(
                "New WebSocket session accepted",
                extra={"session_id": transport_session.session_id},
            )
            task = asyncio.create_task(self.hub.run_session(Session(transport_session)))
            self._session_tasks.add(task)
            task.add_done_callback(self._session_tasks.discard)

    async def stop(self) -> None:
        """Stop accepting, close connections, stop the worker."""
        logger.info("Shutting down relay server")

        if self._accept_task is not None:
            self._accept_task.cancel()
            await asyncio.gather(self._accept_task, return_exceptions=True)
            self._accept_task = None

        await self.transport.stop()
        logger.info("WebSocket transport stopped")

        if self._session_tasks:
            logger.info("Waiting for sessions to complete", extra={"count": len(self._session_tasks)})
            _, pending = await asyncio.wait(
                set(self._session_tasks), timeout=self.config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("HTTP server stopped")

        await self.supervisor.stop()
        logger.info("Classifier worker stopped")

        if self.corrector is not None:
            await self.corrector.close()

        logger.info("Relay server stopped")


async def start_server(config_path: Path, server: RelayServer | None = None) -> None:
    """Start the relay server and run until interrupted.

    Args:
        config_path: Path to YAML config file (defaults apply if absent)
        server: Optional pre-created server (for testing)
    """
    config = RelayConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if server is None:
        server = RelayServer(config)

    await server.start()
    try:
        await server.serve_forever()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    except Exception as e:
        logger.exception("Server error", extra={"error": str(e)})
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the relay server."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Peer video relay server")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Relay server interrupted")


if __name__ == "__main__":
    main()
