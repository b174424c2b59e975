"""
HTTP receiver for chat-gateway events.

Runs as a background thread next to the trading service.
Handles:
- POST /message - A new chat message
- POST /message-edit - An edited chat message (with the previous text when known)

Embed text (title, description, fields, footer) is flattened into the message
content before it is forwarded, so the parser only ever sees one string.
"""

import json
import logging
import threading
from datetime import datetime
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Callable, List, Optional

from .models import ChatMessage, ChatMessageEdit

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8765


def _embed_lines(embed: dict) -> List[str]:
    lines = []
    for key in ("title", "description"):
        if embed.get(key):
            lines.append(str(embed[key]))
    for f in embed.get("fields") or []:
        name, value = f.get("name"), f.get("value")
        if name and value:
            lines.append(f"{name}: {value}")
        elif name or value:
            lines.append(str(name or value))
    footer = embed.get("footer")
    if isinstance(footer, dict) and footer.get("text"):
        lines.append(str(footer["text"]))
    elif isinstance(footer, str) and footer:
        lines.append(footer)
    return lines


def flatten_payload(content: Optional[str], embeds: Optional[list] = None) -> str:
    """Message body plus the text of every embed, one line per part."""
    lines = [content] if content else []
    for embed in embeds or []:
        if isinstance(embed, dict):
            lines.extend(_embed_lines(embed))
    return "\n".join(lines)


def _parse_timestamp(value: Optional[str]) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except (ValueError, AttributeError):
        return datetime.utcnow()


def build_message(data: dict) -> Optional[ChatMessage]:
    """ChatMessage from a /message payload, None if it has no id or text."""
    message_id = data.get("messageId")
    content = flatten_payload(data.get("content"), data.get("embeds"))
    if not message_id or not content.strip():
        return None
    return ChatMessage(
        content=content,
        message_id=str(message_id),
        channel_id=str(data["channelId"]) if data.get("channelId") else None,
        author=data.get("author"),
        timestamp=_parse_timestamp(data.get("timestamp")),
    )


def build_edit(data: dict) -> Optional[ChatMessageEdit]:
    """ChatMessageEdit from a /message-edit payload, None if it has no id or text."""
    message_id = data.get("messageId")
    content = flatten_payload(data.get("content"), data.get("embeds"))
    if not message_id or not content.strip():
        return None
    old_content = flatten_payload(data.get("oldContent"), data.get("oldEmbeds")) or None
    return ChatMessageEdit(
        content=content,
        message_id=str(message_id),
        old_content=old_content,
        channel_id=str(data["channelId"]) if data.get("channelId") else None,
    )


class ChatEventHandler(BaseHTTPRequestHandler):
    """HTTP handler for chat-gateway requests."""

    # Class-level state (set by AlertService)
    message_callback: Optional[Callable[[ChatMessage], bool]] = None
    edit_callback: Optional[Callable[[ChatMessageEdit], bool]] = None
    channel_filter: Optional[Callable[[], Optional[str]]] = None  # returns the allowed channel id, or None for all

    def log_message(self, format, *args):
        logger.debug(f"HTTP: {format % args}")

    def do_OPTIONS(self):
        """Handle CORS preflight."""
        self.send_response(200)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.end_headers()

    def do_POST(self):
        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length).decode("utf-8")

        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON: {body[:100]}")
            self._send_error(400, "Invalid JSON")
            return
        if not isinstance(data, dict):
            self._send_error(400, "Expected a JSON object")
            return

        if self.path == "/message":
            event = build_message(data)
            callback = ChatEventHandler.message_callback
        elif self.path == "/message-edit":
            event = build_edit(data)
            callback = ChatEventHandler.edit_callback
        else:
            logger.warning(f"[HTTP POST] Unknown path: {self.path}")
            self._send_error(404, "Not found")
            return

        if event is None:
            self._send_error(400, "messageId and content are required")
            return

        if not self._channel_allowed(event.channel_id):
            logger.debug(f"[{event.message_id}] Ignoring message from channel {event.channel_id}")
            self._send_ok({"forwarded": False})
            return

        forwarded = False
        if callback:
            try:
                forwarded = bool(callback(event))
                if not forwarded:
                    logger.warning(f"[{event.message_id}] {self.path} not accepted by the trading service")
            except Exception as e:
                logger.error(f"[{event.message_id}] Error in {self.path} callback: {e}", exc_info=True)
        else:
            logger.warning(f"{self.path} received but no callback registered - trading service may not be running")

        self._send_ok({"forwarded": forwarded})

    def _channel_allowed(self, channel_id: Optional[str]) -> bool:
        if ChatEventHandler.channel_filter is None:
            return True
        try:
            allowed = ChatEventHandler.channel_filter()
        except Exception as e:
            logger.warning(f"Channel filter failed, accepting message: {e}")
            return True
        return not allowed or channel_id == str(allowed)

    def _send_ok(self, data=None):
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        response = {"status": "ok"}
        if data:
            response.update(data)
        self.wfile.write(json.dumps(response).encode())

    def _send_error(self, code, message):
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(json.dumps({"status": "error", "message": message}).encode())


class AlertService:
    """Background HTTP server for chat-gateway events."""

    def __init__(self, port: int = DEFAULT_PORT, host: str = "0.0.0.0"):
        self.host = host
        self.port = port
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def server_port(self) -> Optional[int]:
        """Bound port (differs from `port` when started with port 0)."""
        return self._server.server_address[1] if self._server else None

    def start(self):
        """Start the HTTP server in a background thread."""
        if self._running:
            logger.warning("Alert service already running")
            return

        # OSError (port in use) propagates to the caller
        self._server = HTTPServer((self.host, self.port), ChatEventHandler)
        self._running = True

        self._thread = threading.Thread(target=self._run, daemon=True, name="AlertService")
        self._thread.start()

        logger.info(f"Alert service started on port {self.server_port}")

    def _run(self):
        """Server loop."""
        try:
            self._server.serve_forever()
        except Exception as e:
            logger.error(f"Alert service error: {e}")
        finally:
            self._running = False

    def stop(self):
        """Stop the HTTP server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
        self._running = False
        logger.info("Alert service stopped")

    def set_callbacks(
        self,
        on_message: Optional[Callable[[ChatMessage], bool]],
        on_edit: Optional[Callable[[ChatMessageEdit], bool]],
    ):
        """Set the callbacks for new and edited messages. Each returns True once the event is queued."""
        ChatEventHandler.message_callback = on_message
        ChatEventHandler.edit_callback = on_edit
        logger.info(f"Alert callbacks set: {on_message is not None}")

    def set_channel_filter(self, channel_filter: Optional[Callable[[], Optional[str]]]):
        ChatEventHandler.channel_filter = channel_filter
