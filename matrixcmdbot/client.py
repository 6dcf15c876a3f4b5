"""A small synchronous client for the Matrix client-server API."""

from __future__ import annotations

import itertools
import time
from typing import Any
from urllib.parse import quote

import httpx

API_PREFIX = "/_matrix/client/v3"
DEFAULT_TIMEOUT = 30.0
SYNC_GRACE = 30.0


class MatrixError(Exception):
    """An error answer from the homeserver."""

    def __init__(self, status_code: int, errcode: str, message: str) -> None:
        super().__init__(f"{status_code} {errcode}: {message}")
        self.status_code = status_code
        self.errcode = errcode
        self.message = message


def _segment(value: str) -> str:
    return quote(value, safe="")


class MatrixClient:
    """Talks to one homeserver on behalf of one logged-in user."""

    def __init__(self, homeserver: str, http: httpx.Client | None = None) -> None:
        self.homeserver = homeserver.rstrip("/")
        self._owns_http = http is None
        self._http = http if http is not None else httpx.Client(timeout=DEFAULT_TIMEOUT)
        self.access_token: str | None = None
        self.user_id: str | None = None
        self.device_id: str | None = None
        self._txn_counter = itertools.count()
        self._txn_prefix = f"m{time.time_ns()}"

    def __enter__(self) -> MatrixClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        response = self._http.request(
            method,
            f"{self.homeserver}{API_PREFIX}{path}",
            json=json,
            params=params,
            headers=headers,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            raise MatrixError(
                response.status_code,
                str(body.get("errcode", "M_UNKNOWN")),
                str(body.get("error", response.reason_phrase)),
            )
        if not response.content:
            return {}
        return response.json()

    def _require_user(self) -> str:
        if self.user_id is None:
            raise RuntimeError("the client is not logged in")
        return self.user_id

    def login(self, username: str, password: str) -> dict[str, Any]:
        """Log in with a password and keep the access token for later calls."""
        answer = self._request(
            "POST",
            "/login",
            json={
                "type": "m.login.password",
                "identifier": {"type": "m.id.user", "user": username},
                "password": password,
            },
        )
        self.access_token = answer.get("access_token")
        self.user_id = answer.get("user_id")
        self.device_id = answer.get("device_id")
        return answer

    def _next_txn_id(self) -> str:
        return f"{self._txn_prefix}.{next(self._txn_counter)}"

    def send_message_event(self, room: str, content: dict[str, Any]) -> str:
        """Send an ``m.room.message`` event and return its event id."""
        path = (
            f"/rooms/{_segment(room)}/send/m.room.message/"
            f"{_segment(self._next_txn_id())}"
        )
        answer = self._request("PUT", path, json=content)
        return answer["event_id"]

    def user_typing(self, room: str, typing: bool, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Set or clear the typing notification; ``timeout`` is in seconds."""
        user = self._require_user()
        body: dict[str, Any] = {"typing": typing}
        if typing:
            body["timeout"] = int(timeout * 1000)
        self._request("PUT", f"/rooms/{_segment(room)}/typing/{_segment(user)}", json=body)

    def join_room(self, room: str) -> str:
        """Join a room by id or alias and return the joined room id."""
        answer = self._request("POST", f"/join/{_segment(room)}", json={})
        return answer["room_id"]

    def sync(self, since: str | None = None, timeout: float = DEFAULT_TIMEOUT) -> dict[str, Any]:
        """Long-poll for new events; ``timeout`` is in seconds."""
        params: dict[str, Any] = {"timeout": int(timeout * 1000)}
        if since:
            params["since"] = since
        return self._request("GET", "/sync", params=params, timeout=timeout + SYNC_GRACE)

    def close(self) -> None:
        """Release the HTTP connection pool if this client created it."""
        if self._owns_http:
            self._http.close()