"""Tkinter front end and entry point for chatpad."""

from __future__ import annotations

import sys
from typing import Any, Callable

from dotenv import load_dotenv
from rich.console import Console

from chatpad import (
    LOGGER,
    AppConfig,
    AppPaths,
    CompletionClient,
    ConfigurationError,
    ConversationController,
    Message,
    MessageType,
    TurnWorker,
)

try:
    # Tkinter ships with CPython but is often missing on headless servers.
    import tkinter as tk
    from tkinter import messagebox, scrolledtext
except ModuleNotFoundError as exc:  # pragma: no cover - depends on environment
    raise RuntimeError(
        "Tkinter is required to run the chatpad window. "
        "Install the Python Tk bindings for your platform."
    ) from exc


CONSOLE = Console()

_LABELS = {MessageType.USER: "You", MessageType.BOT: "Bot"}


class ChatGUI:
    """Single-window chat client rendering a :class:`ConversationController`."""

    def __init__(self, controller: ConversationController, worker: TurnWorker, config: AppConfig) -> None:
        self._controller = controller
        self._config = config
        self._closing = False
        self._rendered = 0
        self._root = tk.Tk()
        self._root.title("chatpad")
        self._root.geometry("760x560")
        self._root.protocol("WM_DELETE_WINDOW", self._on_close)

        self._chat_display = scrolledtext.ScrolledText(
            self._root,
            wrap=tk.WORD,
            font=("Helvetica", 11),
            state=tk.DISABLED,
        )
        self._chat_display.tag_configure("user", foreground="#1f77b4", justify=tk.RIGHT)
        self._chat_display.tag_configure("bot", foreground="#2ca02c")
        self._chat_display.pack(padx=12, pady=12, fill=tk.BOTH, expand=True)

        self._input_frame = tk.Frame(self._root)
        self._input_frame.pack(fill=tk.X, padx=12, pady=(0, 12))

        self._input_var = tk.StringVar()
        self._input_var.trace_add("write", self._on_input_changed)
        self._user_entry = tk.Entry(
            self._input_frame, textvariable=self._input_var, font=("Helvetica", 11)
        )
        self._user_entry.pack(side=tk.LEFT, fill=tk.X, expand=True)
        self._user_entry.bind("<Return>", self._send_message_event)
        self._user_entry.focus_set()

        self._send_button = tk.Button(self._input_frame, text="Send", command=self._send_message)
        self._send_button.pack(side=tk.LEFT, padx=(8, 0))

        self._status_var = tk.StringVar()
        self._status_label = tk.Label(
            self._root,
            textvariable=self._status_var,
            anchor=tk.W,
            relief=tk.SUNKEN,
        )
        self._status_label.pack(fill=tk.X, padx=12, pady=(0, 12))

        # Results come back on the worker thread; hop onto the Tk loop before
        # the controller appends them.
        worker.set_scheduler(self._schedule)
        self._unsubscribe = controller.subscribe(self._on_message)
        self._render()

    def _schedule(self, callback: Callable[[], None]) -> None:
        if self._closing:
            return
        try:
            self._root.after(0, callback)
        except tk.TclError:
            LOGGER.debug("Dropping completion result; window already destroyed")

    def _on_input_changed(self, *_args: Any) -> None:
        self._controller.set_input(self._input_var.get())

    def _send_message_event(self, event: "tk.Event[Any]") -> None:  # pragma: no cover - GUI
        self._send_message()

    def _send_message(self) -> None:
        self._controller.set_input(self._input_var.get())
        if self._controller.submit() is not None:
            self._input_var.set(self._controller.pending_input)

    def _on_message(self, message: Message) -> None:
        self._render()

    def _render(self) -> None:
        """Draw every message appended since the last render."""

        messages = self._controller.messages()
        if len(messages) > self._rendered:
            self._chat_display.configure(state=tk.NORMAL)
            for message in messages[self._rendered :]:
                label = _LABELS[message.type]
                self._chat_display.insert(
                    tk.END, f"{label}: {message.text}\n\n", message.type.value
                )
            self._chat_display.configure(state=tk.DISABLED)
            self._chat_display.yview(tk.END)
            self._rendered = len(messages)
        self._status_var.set(f"Model: {self._config.model_name} | Messages: {len(messages)}")

    def _on_close(self) -> None:
        if messagebox.askokcancel("Quit", "Close chatpad? The conversation will be lost."):
            self._closing = True
            self._unsubscribe()
            self._controller.shutdown()
            self._root.destroy()

    def run(self) -> None:  # pragma: no cover - GUI loop
        LOGGER.info("Starting GUI loop")
        self._root.mainloop()


# ---------------------------------------------------------------------------
# Application bootstrap
# ---------------------------------------------------------------------------

def build_application() -> ChatGUI:
    """Wire configuration, client, worker, controller and window together."""

    paths = AppPaths()
    config = AppConfig.from_env(paths)
    if not config.has_credential:
        CONSOLE.print(
            "[bold yellow]Warning:[/bold yellow] OPENAI_API_KEY is not set; "
            "every message will be answered with an error until it is."
        )
    client = CompletionClient(config)
    worker = TurnWorker(client)
    controller = ConversationController(client, worker=worker)
    return ChatGUI(controller, worker, config)


def main() -> None:  # pragma: no cover - entry point
    load_dotenv()
    try:
        app = build_application()
    except ConfigurationError as exc:
        CONSOLE.print(f"[bold red]Configuration error:[/bold red] {exc}")
        sys.exit(1)
    except Exception as exc:
        LOGGER.exception("Fatal error during application startup")
        CONSOLE.print(f"[bold red]Unexpected error:[/bold red] {exc}")
        sys.exit(1)

    app.run()


if __name__ == "__main__":  # pragma: no cover - module executed directly
    main()
