"""WebSocket CLI client for exercising the relay.

Joins a room, prints everything the relay delivers, and sends typed lines to
the room as ``transcription`` messages. Handy for checking room fan-out with
two terminals and no browser.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /join <room>        - Join (or switch to) a room
  /leave              - Leave the current room
  /letter <L> [conf]  - Send an asl-letter message
  /quit               - Exit client
  /help               - Show this help
Any other line is sent to the room as a transcription.
"""


def build_join(room_id: str, user_id: str | None = None) -> dict[str, Any]:
    """Build a join message."""
    message: dict[str, Any] = {"type": "join", "roomId": room_id}
    if user_id:
        message["userId"] = user_id
    return message


def build_transcription(text: str) -> dict[str, Any]:
    """Build a transcription message."""
    return {"type": "transcription", "text": text}


def build_asl_letter(letter: str, confidence: float = 1.0) -> dict[str, Any]:
    """Build an asl-letter message."""
    return {"type": "asl-letter", "letter": letter.upper(), "confidence": confidence}


def format_server_message(data: dict[str, Any]) -> str:
    """Render one relay message as a single human-readable line."""
    msg_type = data.get("type")
    sender = data.get("from", "?")

    if msg_type == "joined":
        return f"* joined room {data.get('roomId')} as {data.get('userId')}"
    if msg_type == "peer-joined":
        return f"* {data.get('userId')} joined"
    if msg_type == "peer-left":
        return f"* {sender} left"
    if msg_type == "transcription":
        return f"{sender}: {data.get('text', '')}"
    if msg_type == "asl-letter":
        line = f"{sender} signed {data.get('letter')} ({data.get('confidence')})"
        if data.get("accumulatedText"):
            line += f" [{data['accumulatedText']}]"
        return line
    if msg_type in ("offer", "answer", "ice-candidate"):
        return f"~ {msg_type} from {sender}"
    if msg_type == "error":
        return f"! error: {data.get('message')}"
    return f"? {json.dumps(data)}"


class CLIClient:
    """WebSocket CLI client for relay communication."""

    def __init__(
        self,
        server_url: str,
        room_id: str | None = None,
        user_id: str | None = None,
        verbose: bool = False,
    ) -> None:
        """Initialize CLI client.

        Args:
            server_url: WebSocket server URL (e.g., ws://localhost:8080/ws)
            room_id: Room to join on connect
            user_id: Display name announced on join
            verbose: Enable verbose logging
        """
        self.server_url = server_url
        self.room_id = room_id
        self.user_id = user_id
        self.verbose = verbose
        self.running = True

        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    async def send(self, websocket: ClientConnection, message: dict[str, Any]) -> None:
        """Send one JSON message to the relay."""
        await websocket.send(json.dumps(message))
        logger.debug(f"Sent: {message.get('type')}")

    async def handle_message(self, message_data: str) -> None:
        """Handle incoming message from server.

        Args:
            message_data: Raw JSON message from server
        """
        try:
            data = json.loads(message_data)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse message: {e}")
            return

        if not isinstance(data, dict):
            logger.warning(f"Unexpected message: {message_data}")
            return

        if data.get("type") == "joined":
            self.room_id = data.get("roomId")
            self.user_id = data.get("userId")

        print(format_server_message(data), flush=True)

    async def receive_messages(self, websocket: ClientConnection) -> None:
        """Receive and handle messages from server.

        Args:
            websocket: WebSocket connection
        """
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8")
                await self.handle_message(message)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")
        finally:
            self.running = False

    async def handle_input(self, websocket: ClientConnection, text: str) -> None:
        """Act on one line of user input."""
        if not text.startswith("/"):
            await self.send(websocket, build_transcription(text))
            return

        command, _, argument = text[1:].partition(" ")
        command = command.lower()
        argument = argument.strip()

        if command == "quit":
            self.running = False
            await websocket.close()
        elif command == "help":
            print(HELP_TEXT)
        elif command == "join" and argument:
            await self.send(websocket, build_join(argument, self.user_id))
        elif command == "leave":
            await self.send(websocket, {"type": "leave"})
        elif command == "letter" and argument:
            letter, _, confidence = argument.partition(" ")
            try:
                value = float(confidence) if confidence else 1.0
            except ValueError:
                print(f"Invalid confidence: {confidence}")
                return
            await self.send(websocket, build_asl_letter(letter, value))
        else:
            print(f"Unknown command: {text}")
            print("Type /help for available commands")

    async def input_loop(self, websocket: ClientConnection) -> None:
        """Handle user input from stdin.

        Args:
            websocket: WebSocket connection
        """
        print(HELP_TEXT)
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, sys.stdin.readline)
            except Exception as e:
                logger.error(f"Input error: {e}")
                break

            if not text:
                # EOF
                self.running = False
                await websocket.close()
                break

            text = text.strip()
            if text:
                await self.handle_input(websocket, text)

    async def run(self) -> None:
        """Run the CLI client."""
        try:
            async with websockets.connect(self.server_url) as websocket:
                logger.info(f"Connected to {self.server_url}")

                if self.room_id:
                    await self.send(websocket, build_join(self.room_id, self.user_id))

                def signal_handler() -> None:
                    self.running = False
                    asyncio.ensure_future(websocket.close())

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, signal_handler)

                try:
                    receiver = asyncio.create_task(self.receive_messages(websocket))
                    await self.input_loop(websocket)
                    await receiver
                finally:
                    for sig in (signal.SIGINT, signal.SIGTERM):
                        loop.remove_signal_handler(sig)

        except OSError as e:
            logger.error(f"Client error: {e}")
            sys.exit(1)


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="WebSocket CLI client for the peer video relay")
    parser.add_argument(
        "--url",
        type=str,
        default="ws://localhost:8080/ws",
        help="Relay WebSocket URL (default: ws://localhost:8080/ws)",
    )
    parser.add_argument("--room", type=str, default=None, help="Room to join on connect")
    parser.add_argument("--user", type=str, default=None, help="Display name to announce")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    client = CLIClient(
        server_url=args.url, room_id=args.room, user_id=args.user, verbose=args.verbose
    )
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
