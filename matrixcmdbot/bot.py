"""Command handling, typing notifications and notices for the bot."""

from __future__ import annotations

import json
import logging
import signal
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Any

import httpx
import markdown

from matrixcmdbot.client import MatrixClient, MatrixError
from matrixcmdbot.config import Config

SHELL_COMMAND_TIMEOUT = 30.0
TYPING_INTERVAL = 30.0
MSG_NOTICE = "m.notice"
FORMAT_HTML = "org.matrix.custom.html"

_HELP_HEADER = (
    "The following commands are avaitible for this bot:\n"
    "\n"
    "Command\t\tPower required\t\tExplanation\n"
    "----------------------------------------------------------------"
)

_CLIENT_ERRORS = (MatrixError, httpx.HTTPError, RuntimeError)

Handler = Callable[[threading.Event, str, str, str], None]


@dataclass(frozen=True)
class CommandHandler:
    """A command word, the power it needs, its function and its help text."""

    pattern: str
    min_power: int
    handler: Handler
    description: str


class _TextExtractor(HTMLParser):
    _BLOCKS = frozenset(
        {
            "p", "div", "pre", "blockquote", "li", "ul", "ol", "tr", "table",
            "h1", "h2", "h3", "h4", "h5", "h6",
        }
    )

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []

    def _newline(self) -> None:
        if self._parts and not self._parts[-1].endswith("\n"):
            self._parts.append("\n")

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "br":
            self._parts.append("\n")
        elif tag in self._BLOCKS:
            self._newline()

    def handle_endtag(self, tag: str) -> None:
        if tag in self._BLOCKS:
            self._newline()

    def handle_data(self, data: str) -> None:
        self._parts.append(data)

    def text(self) -> str:
        return "".join(self._parts).strip("\n")


def html_to_text(html: str) -> str:
    """Strip tags and decode entities, keeping line breaks between blocks."""
    extractor = _TextExtractor()
    extractor.feed(html)
    extractor.close()
    return extractor.text()


def parse_command(body: str, bot_user: str) -> tuple[str, str] | None:
    """Split ``"<bot>: <cmd> <args>"`` into command and arguments.

    The prefix is the localpart of ``bot_user``. Returns None when the
    message is not addressed to the bot as a command.
    """
    body = body.strip()
    if bot_user.startswith("@"):
        bot_user = bot_user[1:].split(":", 1)[0]
    prefix = f"{bot_user}: "
    if not body.startswith(prefix):
        return None
    body = body[len(prefix):]
    parts = body.split()
    if not parts:
        return None
    command = parts[0]
    args = body.removeprefix(command).strip()
    return command, args


def _mentions(at: str | None) -> dict[str, Any]:
    return {"user_ids": [at]} if at is not None else {}


def build_notice(message: str, at: str | None = None) -> dict[str, Any]:
    """Content of a plain-text notice, optionally mentioning one user."""
    return {"msgtype": MSG_NOTICE, "body": message, "m.mentions": _mentions(at)}


def _render_markdown(text: str) -> str:
    renderer = markdown.Markdown()
    renderer.preprocessors.deregister("html_block", strict=False)
    renderer.inlinePatterns.deregister("html", strict=False)
    html = renderer.convert(text).rstrip("\n")
    if html.startswith("<p>") and html.endswith("</p>") and html.count("<p>") == 1:
        html = html[3:-4]
    return html


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        name = signal.strsignal(-returncode) or f"signal {-returncode}"
        return f"signal: {name.lower()}"
    return f"exit status {returncode}"


class MatrixBot:
    """Answers commands sent to it in Matrix rooms."""

    def __init__(self, config: Config, client: MatrixClient) -> None:
        self.config = config
        self.client = client
        self.name = config.botname
        self.matrix_user = config.username
        self.handlers: list[CommandHandler] = []
        self.command_map: dict[str, CommandHandler] = {}
        self.log = logging.getLogger(__name__).getChild(config.botname or "bot")
        self._lock = threading.Lock()
        self._running: set[threading.Event] = set()
        self._typing_counts: dict[str, int] = {}
        self._typing_stops: dict[str, threading.Event] = {}

        self.register_command("help", 0, "Default action is to display help", self._handle_help)
        self.register_command("shell", 0, "Exec shell commands obn host", self._handle_shell)

    def register_command(
        self, pattern: str, min_power: int, description: str, handler: Handler
    ) -> CommandHandler:
        """Add a command; a later command with the same pattern wins."""
        entry = CommandHandler(pattern, min_power, handler, description)
        self.log.debug("Registered command: %s [%d]", pattern, min_power)
        self.handlers.append(entry)
        self.command_map[pattern] = entry
        return entry

    def handle_commands(
        self, message: dict[str, Any], room: str, sender: str
    ) -> threading.Thread | None:
        """Dispatch a message to its command handler in a new thread.

        Returns the thread, or None when the message is ignored.
        """
        if self.matrix_user in sender:
            self.log.debug("Bots own message, ignore")
            return None

        self.log.info("Handling input...")
        body = str(message.get("body", ""))
        self.log.debug("Message by user %s: %s", sender, body)
        labels = [handler.pattern for handler in self.handlers if handler.pattern]
        self.log.debug("Sending Body data %s", json.dumps({"text": body, "labels": labels}))

        parsed = parse_command(body, self.matrix_user)
        if parsed is None:
            return None
        command, args = parsed
        self.log.debug("Entered command %r with arguments %r", command, args)

        entry = self.command_map.get(command)
        if entry is None:
            self.log.warning("Unrecognized command: %s", command)
            return None

        ctx = threading.Event()
        with self._lock:
            self._running.add(ctx)
        thread = threading.Thread(
            target=entry.handler, args=(ctx, room, sender, args), daemon=True
        )
        thread.start()
        return thread

    def _cancel_context(self, ctx: threading.Event) -> bool:
        with self._lock:
            if ctx not in self._running:
                return False
            self._running.discard(ctx)
        ctx.set()
        return True

    def cancel_running_handlers(self) -> None:
        """Signal every running command handler to stop."""
        with self._lock:
            running = list(self._running)
            self._running.clear()
        for ctx in running:
            ctx.set()

    def handle_room_typing(self, room: str, counter: int) -> int:
        """Add ``counter`` to the room's workload; type while it is above zero."""
        with self._lock:
            count = max(self._typing_counts.get(room, 0) + counter, 0)
            self.log.debug("Counter for room %s is %d", room, count)
            if count == 1 and room not in self._typing_stops:
                stop = threading.Event()
                self._typing_stops[room] = stop
                threading.Thread(
                    target=self._keep_typing, args=(room, stop), daemon=True
                ).start()
            elif count == 0:
                stop = self._typing_stops.pop(room, None)
                if stop is not None:
                    stop.set()
            self._typing_counts[room] = count
        return count

    def _keep_typing(self, room: str, stop: threading.Event) -> None:
        while not stop.is_set():
            self.log.info("Sending typing as at least one room has asked the bot something")
            self._toggle_typing(room, True)
            stop.wait(TYPING_INTERVAL)
        self.log.info("Done typing")
        self._toggle_typing(room, False)

    def _toggle_typing(
        self, room: str, typing: bool, ctx: threading.Event | None = None
    ) -> None:
        try:
            self.client.user_typing(room, typing, TYPING_INTERVAL)
        except _CLIENT_ERRORS as exc:
            self.log.error("Error setting typing status: %s", exc)
            if ctx is not None:
                self._cancel_context(ctx)

    def help_text(self) -> str:
        """The table of commands shown by ``help``."""
        lines = [_HELP_HEADER]
        lines.extend(
            f"{entry.pattern}\t\t\t[{entry.min_power}]\t\t\t\t\t{entry.description}"
            for entry in self.handlers
        )
        return "\n".join(lines)

    def _handle_help(self, ctx: threading.Event, room: str, sender: str, args: str) -> None:
        self.handle_room_typing(room, 1)
        try:
            try:
                self.send_text_notice(room, self.help_text(), sender)
            except _CLIENT_ERRORS as exc:
                self.log.error("Couldn't send response back to user: %s", exc)
            self.log.info("Sent response back to user")
            self._toggle_typing(room, False, ctx)
        finally:
            self.handle_room_typing(room, -1)
            self._cancel_context(ctx)

    def _handle_shell(self, ctx: threading.Event, room: str, sender: str, args: str) -> None:
        try:
            response = self.run_shell_command(args) if args else "Команда пуста."
            try:
                self.send_text_notice(room, response, sender)
            except _CLIENT_ERRORS as exc:
                self.log.error("Couldn't send response back to user: %s", exc)
        finally:
            self._cancel_context(ctx)

    def run_shell_command(self, command: str) -> str:
        """Run ``command`` with bash and describe the outcome for the chat."""
        try:
            result = subprocess.run(
                ["bash", "-c", command],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=SHELL_COMMAND_TIMEOUT,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return (
                f"⚠️ Команда `{command}` превысила лимит в "
                f"{int(SHELL_COMMAND_TIMEOUT)}s."
            )
        except OSError as exc:
            return f"❌ Ошибка при выполнении команды `{command}`: {exc}\n"
        output = result.stdout.decode("utf-8", errors="replace")
        if result.returncode != 0:
            return (
                f"❌ Ошибка при выполнении команды `{command}`: "
                f"{_describe_exit(result.returncode)}\n{output}"
            )
        return f"✅ Результат команды `{command}`:\n```\n{output}\n```"

    def send_text_notice(self, room: str, message: str, at: str | None = None) -> str:
        """Send a plain notice and return the event id."""
        return self.client.send_message_event(room, build_notice(message, at))

    def send_html_notice(self, room: str, message: str, at: str | None = None) -> str:
        """Send an HTML notice with a plain-text fallback body."""
        content = {
            "msgtype": MSG_NOTICE,
            "body": html_to_text(message),
            "format": FORMAT_HTML,
            "formatted_body": message,
            "m.mentions": _mentions(at),
        }
        return self.client.send_message_event(room, content)

    def send_markdown_notice(self, room: str, message: str, at: str | None = None) -> str:
        """Render Markdown (raw HTML escaped) and send it as a notice."""
        html = _render_markdown(message)
        content: dict[str, Any] = {
            "msgtype": MSG_NOTICE,
            "body": message,
            "format": FORMAT_HTML,
            "m.mentions": _mentions(at),
        }
        if html != message:
            content["formatted_body"] = html
        return self.client.send_message_event(room, content)