"""Classifier worker process: the external side of the line protocol.

Reads one JSON request per line from stdin and writes one JSON response per
line to stdout. All logging goes to stderr; once the backend is loaded the
readiness sentinel is written to stderr so the supervisor can start sending
requests.

Request:  {"id": "req_1700000000000_1", "image": "<base64 or data URL>"}
Response: {"id": "req_1700000000000_1", "letter": "B", "confidence": 0.87}
Error:    {"id": "req_1700000000000_1", "error": "Invalid base64 image data"}
"""

import base64
import binascii
import hashlib
import json
import logging
import string
import sys
from typing import Any, Final, Protocol, TextIO

from src.classifier.supervisor import READY_SENTINEL
from src.common.types import ClassificationResult

logger = logging.getLogger(__name__)

LETTERS: Final[str] = string.ascii_uppercase
MIN_CONFIDENCE: Final[float] = 0.5
DATA_URL_PREFIX: Final[str] = "data:"


class ClassifierBackend(Protocol):
    """Letter classifier backend loaded by the worker."""

    def load(self) -> None:
        """Load model weights (may be slow)."""
        ...

    def classify(self, image: bytes) -> ClassificationResult:
        """Classify decoded image bytes into a letter."""
        ...


class MockClassifierBackend:
    """Deterministic backend: the image digest selects the letter.

    The same image always yields the same letter and confidence, which keeps
    end-to-end tests stable without a model.
    """

    def __init__(self) -> None:
        self.loaded = False

    def load(self) -> None:
        self.loaded = True
        logger.info("Mock classifier backend loaded")

    def classify(self, image: bytes) -> ClassificationResult:
        if not image:
            raise ValueError("Empty image data")

        digest = hashlib.sha256(image).digest()
        letter = LETTERS[digest[0] % len(LETTERS)]
        # Two digest bytes → [0.5, 1.0)
        fraction = int.from_bytes(digest[1:3], "big") / 65536
        confidence = round(MIN_CONFIDENCE + fraction * (1.0 - MIN_CONFIDENCE), 4)
        if confidence >= 1.0:
            confidence = 0.9999
        return ClassificationResult(letter=letter, confidence=confidence)


BACKENDS: Final[dict[str, type]] = {
    "mock": MockClassifierBackend,
}


def create_backend(name: str) -> ClassifierBackend:
    """Instantiate a backend by name.

    Raises:
        ValueError: Unknown backend name
    """
    try:
        backend_cls = BACKENDS[name]
    except KeyError:
        raise ValueError(f"Unknown classifier backend: {name}") from None
    backend: ClassifierBackend = backend_cls()
    return backend


def decode_image(image: str) -> bytes:
    """Decode a base64 image, accepting ``data:image/...;base64,`` URLs.

    Raises:
        ValueError: Payload is not valid base64
    """
    payload = image.strip()
    if payload.startswith(DATA_URL_PREFIX):
        _, sep, payload = payload.partition(",")
        if not sep:
            raise ValueError("Invalid data URL")

    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Invalid base64 image data") from None


def handle_request_line(line: str, backend: ClassifierBackend) -> dict[str, Any]:
    """Process one request line and build the response object.

    Never raises: every failure becomes an ``error`` response so the worker
    keeps serving subsequent requests.
    """
    try:
        request = json.loads(line)
    except json.JSONDecodeError:
        return {"id": None, "error": "Invalid request format"}

    if not isinstance(request, dict):
        return {"id": None, "error": "Invalid request format"}

    request_id = request.get("id")
    if not isinstance(request_id, str) or not request_id:
        return {"id": None, "error": "Missing request id"}

    image = request.get("image")
    if not isinstance(image, str) or not image:
        return {"id": request_id, "error": "Missing image data"}

    try:
        result = backend.classify(decode_image(image))
    except ValueError as e:
        return {"id": request_id, "error": str(e)}
    except Exception as e:
        logger.exception("Classification failed", extra={"request_id": request_id})
        return {"id": request_id, "error": f"Classification failed: {e}"}

    return {"id": request_id, "letter": result["letter"], "confidence": result["confidence"]}


def run_worker(
    backend: ClassifierBackend,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    """Serve requests until EOF on stdin.

    Args:
        backend: Classifier backend (loaded here)
        stdin: Request stream (default: sys.stdin)
        stdout: Response stream (default: sys.stdout)
        stderr: Stream for the readiness sentinel (default: sys.stderr)

    Returns:
        Process exit code
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    backend.load()
    print(READY_SENTINEL, file=stderr, flush=True)

    handled = 0
    for line in stdin:
        line = line.strip()
        if not line:
            continue

        response = handle_request_line(line, backend)
        stdout.write(json.dumps(response) + "\n")
        stdout.flush()
        handled += 1

        if "error" in response:
            logger.warning(
                "Request failed",
                extra={"request_id": response["id"], "error": response["error"]},
            )

    logger.info("stdin closed, worker exiting", extra={"requests": handled})
    return 0
