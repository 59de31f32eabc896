"""chatpad
=======

Core of the chatpad desktop client: a single window that forwards what the
user types to a chat-completion endpoint and shows the reply underneath.

The module is split into a handful of small pieces:

* **Configuration** – :class:`AppConfig` reads the endpoint, model and bearer
  credential from environment variables or an optional JSON file.
* **Conversation state** – :class:`Message` and :class:`Conversation` hold the
  append-only transcript for the lifetime of the process.
* **Completion client** – :class:`CompletionClient` performs one HTTPS POST per
  user turn and turns every failure into a plain, displayable description.
* **Controller** – :class:`ConversationController` mediates a user turn end to
  end, and :class:`TurnWorker` keeps the network call off the UI thread.

The Tk front end lives in :mod:`chatpad_gui` so this module can be imported on
machines without GUI bindings.
"""

from __future__ import annotations

import enum
import json
import logging
import math
import os
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

import requests
from requests import Response

# ---------------------------------------------------------------------------
# Logging infrastructure
# ---------------------------------------------------------------------------

def _build_logger() -> logging.Logger:
    """Configure the module level logger.

    Writes to stderr at INFO unless ``CHATPAD_LOG_LEVEL`` asks for something
    else.
    """

    logger = logging.getLogger("chatpad")
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    level_name = os.getenv("CHATPAD_LOG_LEVEL", "INFO").upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    logger.propagate = False
    return logger


LOGGER = _build_logger()

DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-3.5-turbo"
ERROR_PREFIX = "Error: "


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(RuntimeError):
    """Raised when the application configuration is invalid."""


class MissingCredentialError(ConfigurationError):
    """Raised when no API key is available for a request."""


class APIError(RuntimeError):
    """Generic API failure encompassing transport, HTTP or schema issues."""


class TransportError(APIError):
    """Raised when the request never produced an HTTP response."""


class RemoteRejectionError(APIError):
    """Raised when the service answers with a non-success status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResponseFormatError(APIError):
    """Raised when a successful response does not carry a usable reply."""


# ---------------------------------------------------------------------------
# Configuration handling
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class AppPaths:
    """Container for filesystem paths used by the application."""

    base_dir: Path = field(default_factory=lambda: Path.cwd())
    config_file_name: str = "chatpad.json"

    @property
    def config_path(self) -> Path:
        return self.base_dir / self.config_file_name


def _parse_timeout(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Timeout must be a number, got {raw!r}") from exc


def _parse_flag(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    try:
        value = json.loads(str(raw).lower())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Expected true or false, got {raw!r}") from exc
    return bool(value)


@dataclass(slots=True)
class AppConfig:
    """Endpoint, model and credential used for completion requests."""

    api_url: str = DEFAULT_API_URL
    model_name: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    timeout: Optional[float] = None
    verify_tls: bool = True

    @classmethod
    def from_env(cls, paths: AppPaths) -> "AppConfig":
        """Load configuration from environment variables or disk.

        Precedence order (highest to lowest): environment variables, JSON
        configuration file, defaults.  The API key is only ever read from the
        ``OPENAI_API_KEY`` environment variable so it stays out of files that
        may be committed:

        ```json
        {
            "api_url": "https://api.openai.com/v1/chat/completions",
            "model_name": "gpt-3.5-turbo"
        }
        ```
        """

        config_data: Dict[str, Any] = {}
        if paths.config_path.exists():
            try:
                config_data = json.loads(paths.config_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigurationError(
                    f"Configuration file {paths.config_path} contains invalid JSON"
                ) from exc
            if not isinstance(config_data, dict):
                raise ConfigurationError(
                    f"Configuration file {paths.config_path} must contain a JSON object"
                )

        config = cls(
            api_url=os.getenv("CHATPAD_API_URL") or config_data.get("api_url") or DEFAULT_API_URL,
            model_name=os.getenv("CHATPAD_MODEL") or config_data.get("model_name") or DEFAULT_MODEL,
            api_key=os.getenv("OPENAI_API_KEY") or None,
            timeout=_parse_timeout(os.getenv("CHATPAD_TIMEOUT", config_data.get("timeout"))),
            verify_tls=_parse_flag(
                os.getenv("CHATPAD_VERIFY_TLS", config_data.get("verify_tls", True))
            ),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` for unusable settings.

        A missing API key is deliberately accepted here; the client reports it
        on the first turn instead.
        """

        parsed = urlparse(self.api_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"API URL must be an absolute http(s) URL: {self.api_url!r}")
        if not self.model_name:
            raise ConfigurationError("Model name is required")
        if self.timeout is not None and (not math.isfinite(self.timeout) or self.timeout <= 0):
            raise ConfigurationError("Timeout must be positive")

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key)


# ---------------------------------------------------------------------------
# Conversation state
# ---------------------------------------------------------------------------

class MessageType(str, enum.Enum):
    USER = "user"
    BOT = "bot"


@dataclass(frozen=True, slots=True)
class Message:
    """A single line of the transcript. Never modified after creation."""

    text: str
    type: MessageType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(text=text, type=MessageType.USER)

    @classmethod
    def bot(cls, text: str) -> "Message":
        return cls(text=text, type=MessageType.BOT)


class Conversation:
    """Thread-safe, append-only sequence of messages."""

    def __init__(self) -> None:
        self._messages: List[Message] = []
        self._lock = threading.RLock()

    def append(self, message: Message) -> int:
        """Append ``message`` and return its position."""

        with self._lock:
            self._messages.append(message)
            return len(self._messages) - 1

    def snapshot(self) -> Tuple[Message, ...]:
        with self._lock:
            return tuple(self._messages)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.snapshot())


# ---------------------------------------------------------------------------
# HTTP client for the completion endpoint
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Outcome of one completion call: exactly one of ``reply``/``error``."""

    reply: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, reply: str) -> "CompletionResult":
        return cls(reply=reply)

    @classmethod
    def failure(cls, description: str) -> "CompletionResult":
        return cls(error=description)


class CompletionClient:
    """Sends single-message chat completion requests."""

    def __init__(self, config: AppConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session if session is not None else requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def close(self) -> None:
        self._session.close()

    def complete(self, text: str) -> CompletionResult:
        """Request a reply for ``text``.

        Never raises for configuration, transport, HTTP or schema problems;
        those come back as a failed :class:`CompletionResult` whose ``error``
        is suitable for display.
        """

        try:
            return CompletionResult.success(self.request_reply(text))
        except (ConfigurationError, APIError) as exc:
            LOGGER.warning("Completion failed: %s", exc)
            return CompletionResult.failure(str(exc))

    def request_reply(self, text: str) -> str:
        """Send ``text`` as a one-message conversation and return the reply."""

        if not self._config.has_credential:
            raise MissingCredentialError(
                "OpenAI API key is not set. Define OPENAI_API_KEY in your environment or .env file."
            )

        payload = {
            "model": self._config.model_name,
            "messages": [{"role": "user", "content": text}],
        }

        start = time.perf_counter()
        try:
            response = self._session.post(
                self._config.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._config.api_key}"},
                timeout=self._config.timeout,
                verify=self._config.verify_tls,
            )
        except requests.RequestException as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        LOGGER.debug(
            "HTTP %s from %s in %.2fs",
            response.status_code,
            self._config.api_url,
            time.perf_counter() - start,
        )

        if not response.ok:
            raise RemoteRejectionError(
                self._summarise_http_error(response), response.status_code
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ResponseFormatError("Malformed JSON received from backend") from exc
        return self._extract_content(data)

    @staticmethod
    def _summarise_http_error(response: Response) -> str:
        """Prefer the service's own ``error.message``, then the reason phrase."""

        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                message = error.get("message")
                if isinstance(message, str) and message:
                    return message
        return response.reason or f"HTTP {response.status_code}"

    @staticmethod
    def _extract_content(data: Any) -> str:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ResponseFormatError("The model returned no completion choices")
        try:
            content = choices[0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ResponseFormatError("Unexpected response structure from backend") from exc
        if not isinstance(content, str):
            raise ResponseFormatError("The model returned no reply text")
        return content


# ---------------------------------------------------------------------------
# Turn dispatching
# ---------------------------------------------------------------------------

Scheduler = Callable[[Callable[[], None]], Any]
ResultCallback = Callable[[CompletionResult], None]


def _run_now(callback: Callable[[], None]) -> None:
    callback()


class TurnWorker:
    """Runs completion requests one at a time on a background thread.

    Requests are handled in submission order.  Each result is handed to the
    scheduler, which decides on which thread the callback runs; the GUI
    installs ``Tk.after`` so results land on the UI thread.
    """

    def __init__(self, client: CompletionClient, schedule: Optional[Scheduler] = None) -> None:
        self._client = client
        self._schedule: Scheduler = schedule or _run_now
        self._work_queue: "queue.Queue[Optional[Tuple[str, ResultCallback, threading.Event]]]" = (
            queue.Queue()
        )
        self._thread = threading.Thread(
            target=self._run,
            name="ChatCompletionWorker",
            daemon=True,
        )
        self._thread.start()

    def set_scheduler(self, schedule: Scheduler) -> None:
        self._schedule = schedule

    def submit(self, text: str, on_result: ResultCallback) -> threading.Event:
        """Queue ``text``; the returned event is set once ``on_result`` has run."""

        settled = threading.Event()
        self._work_queue.put((text, on_result, settled))
        return settled

    def _run(self) -> None:
        while True:
            item = self._work_queue.get()
            if item is None:
                self._work_queue.task_done()
                return
            text, on_result, settled = item
            try:
                result = self._client.complete(text)
            except Exception as exc:
                LOGGER.exception("Unexpected failure while requesting a completion")
                result = CompletionResult.failure(str(exc) or exc.__class__.__name__)

            def _deliver(res: CompletionResult = result, done: threading.Event = settled) -> None:
                try:
                    on_result(res)
                finally:
                    done.set()

            try:
                self._schedule(_deliver)
            except Exception:
                LOGGER.exception("Could not deliver completion result")
            finally:
                self._work_queue.task_done()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self._work_queue.put(None)
        self._thread.join(timeout)


# ---------------------------------------------------------------------------
# Conversation controller
# ---------------------------------------------------------------------------

Listener = Callable[[Message], None]


class ConversationController:
    """Owns the conversation and the pending input for one chat window."""

    def __init__(
        self,
        client: CompletionClient,
        worker: Optional[TurnWorker] = None,
        conversation: Optional[Conversation] = None,
    ) -> None:
        self._client = client
        self._worker = worker if worker is not None else TurnWorker(client)
        self._conversation = conversation if conversation is not None else Conversation()
        self._pending_input = ""
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()
        self._in_flight = 0

    @property
    def pending_input(self) -> str:
        return self._pending_input

    def set_input(self, text: str) -> None:
        self._pending_input = text

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def messages(self) -> Tuple[Message, ...]:
        return self._conversation.snapshot()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with every appended message until unsubscribed."""

        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def submit(self) -> Optional[threading.Event]:
        """Send the pending input as a new turn.

        A blank buffer is ignored and ``None`` returned.  Otherwise the user
        message is appended and the buffer cleared before the request is
        dispatched; the returned event is set once the bot reply (or error) has
        been appended.
        """

        text = self._pending_input
        if not text.strip():
            return None

        self._append(Message.user(text))
        self._pending_input = ""
        with self._lock:
            self._in_flight += 1
        LOGGER.info("Dispatching turn (%d characters)", len(text))
        return self._worker.submit(text, self._finish_turn)

    def _finish_turn(self, result: CompletionResult) -> None:
        try:
            if result.ok:
                self._append(Message.bot(result.reply or ""))
            else:
                self._append(Message.bot(f"{ERROR_PREFIX}{result.error}"))
        finally:
            with self._lock:
                self._in_flight -= 1

    def _append(self, message: Message) -> None:
        self._conversation.append(message)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(message)
            except Exception:
                LOGGER.exception("Conversation listener failed on %s message", message.type.value)

    def shutdown(self) -> None:
        LOGGER.info("Shutting down controller")
        self._worker.shutdown(timeout=1.0)
        self._client.close()
