"""Sync loop and the event handlers the bot reacts to."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import httpx

from matrixcmdbot.client import DEFAULT_TIMEOUT, MatrixClient, MatrixError

if TYPE_CHECKING:
    from matrixcmdbot.bot import MatrixBot

log = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]


def has_mentions(content: Mapping[str, Any], user: str | None, user_name: str) -> bool:
    """True if ``user`` is in ``m.mentions`` or ``user_name`` is in the body."""
    mentions = content.get("m.mentions")
    if isinstance(mentions, Mapping):
        user_ids = mentions.get("user_ids")
        if isinstance(user_ids, list) and user in user_ids:
            return True
    return user_name in str(content.get("body", ""))


class Syncer:
    """Polls ``/sync`` and passes each event to the handlers for its type."""

    retry_delay = 5.0

    def __init__(self, client: MatrixClient) -> None:
        self.client = client
        self.timeout = DEFAULT_TIMEOUT
        self._handlers: dict[str, list[EventHandler]] = {}

    def on_event_type(self, event_type: str, handler: EventHandler) -> None:
        """Call ``handler`` with every event of ``event_type``."""
        self._handlers.setdefault(event_type, []).append(handler)

    def _dispatch(self, room_id: str, raw: Mapping[str, Any]) -> None:
        event = {**raw, "room_id": room_id}
        for handler in self._handlers.get(str(event.get("type")), []):
            handler(event)

    def _room_events(self, room_id: str, room: Mapping[str, Any], *sections: str) -> None:
        for section in sections:
            for raw in room.get(section, {}).get("events", []):
                self._dispatch(room_id, raw)

    def process_sync(self, response: Mapping[str, Any]) -> str | None:
        """Dispatch the events of one sync answer and return its ``next_batch``."""
        rooms = response.get("rooms", {})
        for room_id, room in rooms.get("join", {}).items():
            self._room_events(room_id, room, "state", "timeline")
        for room_id, room in rooms.get("invite", {}).items():
            self._room_events(room_id, room, "invite_state")
        for room_id, room in rooms.get("leave", {}).items():
            self._room_events(room_id, room, "state", "timeline")
        return response.get("next_batch")

    def run(self, stop_event: threading.Event) -> None:
        """Sync until ``stop_event`` is set, retrying after failed requests."""
        since: str | None = None
        while not stop_event.is_set():
            try:
                response = self.client.sync(since, self.timeout)
            except (MatrixError, httpx.HTTPError) as exc:
                log.error("Sync failed: %s", exc)
                if stop_event.wait(self.retry_delay):
                    break
                continue
            since = self.process_sync(response) or since


def setup_syncer(bot: MatrixBot, syncer: Syncer) -> Syncer:
    """Register the message and membership handlers of ``bot`` on ``syncer``."""

    def on_message(event: dict[str, Any]) -> None:
        content = event.get("content", {})
        if content.get("msgtype") == "m.notice":
            log.debug("Notice, do nothing")
            return
        if has_mentions(content, bot.client.user_id, bot.name):
            log.debug(
                '%s said "%s" in room %s',
                event.get("sender"),
                content.get("body"),
                event["room_id"],
            )
            bot.handle_commands(content, event["room_id"], str(event.get("sender", "")))
        else:
            log.debug("Message not for bot")

    def on_member(event: dict[str, Any]) -> None:
        content = event.get("content", {})
        membership = content.get("membership")
        room_id = event["room_id"]
        log.debug("%s changed bot membership status in %s", event.get("sender"), room_id)
        if membership in ("invite", "join"):
            log.debug("Joining Room %s", room_id)
            try:
                joined = bot.client.join_room(room_id)
            except (MatrixError, httpx.HTTPError) as exc:
                log.critical("Problem joining room: %s", exc)
                raise
            log.debug("Joined room %s", joined)
        elif membership in ("leave", "ban"):
            log.info("Kicked from %s for reason: %s", room_id, content.get("reason", ""))

    syncer.on_event_type("m.room.message", on_message)
    syncer.on_event_type("m.room.member", on_member)
    return syncer