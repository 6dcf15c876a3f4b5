import subprocess
import threading
import time
from unittest import mock

import pytest

from matrixcmdbot.bot import (
    CommandHandler,
    MatrixBot,
    build_notice,
    html_to_text,
    parse_command,
)
from matrixcmdbot.client import MatrixError
from matrixcmdbot.config import Config

ROOM = "!room:example.com"
SENDER = "@alice:example.com"


class FakeClient:
    def __init__(self):
        self.user_id = "@bot-cmd:example.com"
        self.sent = []
        self.typing = []
        self.fail_send = False

    def send_message_event(self, room, content):
        if self.fail_send:
            raise MatrixError(500, "M_UNKNOWN", "boom")
        self.sent.append((room, content))
        return f"$event{len(self.sent)}"

    def user_typing(self, room, typing, timeout):
        self.typing.append((room, typing))


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def bot(client):
    config = Config(
        homeserver="https://matrix.example.com",
        botname="bot-cmd",
        username="@bot-cmd:example.com",
    )
    return MatrixBot(config, client)


def test_default_commands_registered(bot):
    assert [h.pattern for h in bot.handlers] == ["help", "shell"]
    assert set(bot.command_map) == {"help", "shell"}
    assert bot.command_map["help"].min_power == 0


def test_register_command_replaces_in_map(bot):
    def first(ctx, room, sender, args):
        pass

    def second(ctx, room, sender, args):
        pass

    bot.register_command("ping", 5, "one", first)
    entry = bot.register_command("ping", 7, "two", second)
    assert bot.command_map["ping"] == entry
    assert entry == CommandHandler("ping", 7, second, "two")
    assert len(bot.handlers) == 4


def test_help_text_layout(bot):
    bot.register_command("ping", 5, "Reply with pong", lambda *a: None)
    text = bot.help_text()
    assert text.startswith("The following commands are avaitible for this bot:\n\n")
    assert "Command\t\tPower required\t\tExplanation" in text
    assert text.endswith("\nping\t\t\t[5]\t\t\t\t\tReply with pong")
    assert "\nhelp\t\t\t[0]\t\t\t\t\tDefault action is to display help\n" in text


def test_build_notice_with_and_without_mention():
    assert build_notice("hi", SENDER) == {
        "msgtype": "m.notice",
        "body": "hi",
        "m.mentions": {"user_ids": [SENDER]},
    }
    assert build_notice("hi")["m.mentions"] == {}


@pytest.mark.parametrize(
    "html, expected",
    [
        ("<b>hi</b> &amp; <i>there</i>", "hi & there"),
        ("a<br>b", "a\nb"),
        ("<p>one</p><p>two</p>", "one\ntwo"),
        ("plain", "plain"),
    ],
)
def test_html_to_text(html, expected):
    assert html_to_text(html) == expected


@pytest.mark.parametrize(
    "body, user, expected",
    [
        ("bot-cmd: help", "@bot-cmd:example.com", ("help", "")),
        ("  bot-cmd: shell ls -la  ", "bot-cmd", ("shell", "ls -la")),
        ("bot-cmd: shell   echo  a", "bot-cmd", ("shell", "echo  a")),
        ("hello there", "bot-cmd", None),
        ("bot-cmd:help", "bot-cmd", None),
        ("bot-cmd: ", "bot-cmd", None),
    ],
)
def test_parse_command(body, user, expected):
    assert parse_command(body, user) == expected


def test_own_messages_are_ignored(bot, client):
    thread = bot.handle_commands({"body": "bot-cmd: help"}, ROOM, "@bot-cmd:example.com")
    assert thread is None
    assert client.sent == []


def test_unknown_and_non_command_messages_are_ignored(bot, client):
    assert bot.handle_commands({"body": "bot-cmd: nope"}, ROOM, SENDER) is None
    assert bot.handle_commands({"body": "just chatting"}, ROOM, SENDER) is None
    assert client.sent == []


def test_custom_handler_receives_arguments(bot):
    seen = []
    bot.register_command(
        "echo", 0, "Echo", lambda ctx, room, sender, args: seen.append((room, sender, args))
    )
    thread = bot.handle_commands({"body": "bot-cmd: echo a b"}, ROOM, SENDER)
    thread.join(5)
    assert seen == [(ROOM, SENDER, "a b")]


def test_empty_shell_command_replies(bot, client):
    thread = bot.handle_commands({"body": "bot-cmd: shell"}, ROOM, SENDER)
    thread.join(5)
    assert client.sent == [(ROOM, build_notice("Команда пуста.", SENDER))]


def test_shell_command_output_is_sent(bot, client):
    thread = bot.handle_commands({"body": "bot-cmd: shell echo hello"}, ROOM, SENDER)
    thread.join(10)
    assert len(client.sent) == 1
    room, content = client.sent[0]
    assert room == ROOM
    assert content["body"] == bot.run_shell_command("echo hello")
    assert "hello" in content["body"]
    assert content["m.mentions"] == {"user_ids": [SENDER]}


def test_run_shell_command_success(bot):
    result = bot.run_shell_command("echo hello")
    assert result == "✅ Результат команды `echo hello`:\n```\nhello\n\n```"


def test_run_shell_command_failure(bot):
    result = bot.run_shell_command("echo oops; exit 3")
    assert result.startswith("❌ Ошибка при выполнении команды `echo oops; exit 3`: ")
    assert "exit status 3" in result
    assert result.endswith("\noops\n")


def test_run_shell_command_timeout(bot):
    with mock.patch(
        "matrixcmdbot.bot.subprocess.run",
        side_effect=subprocess.TimeoutExpired("bash", 30),
    ):
        result = bot.run_shell_command("sleep 100")
    assert result.startswith("⚠️ Команда `sleep 100`")
    assert "30s" in result


def test_help_command_sends_table_and_stops_typing(bot, client):
    thread = bot.handle_commands({"body": "bot-cmd: help"}, ROOM, SENDER)
    thread.join(5)
    assert client.sent == [(ROOM, build_notice(bot.help_text(), SENDER))]
    assert wait_for(lambda: client.typing.count((ROOM, False)) >= 2)
    assert (ROOM, True) in client.typing
    assert bot.handle_room_typing(ROOM, 0) == 0


def test_help_survives_send_failure(bot, client):
    client.fail_send = True
    thread = bot.handle_commands({"body": "bot-cmd: help"}, ROOM, SENDER)
    thread.join(5)
    assert not thread.is_alive()
    assert client.sent == []


def test_room_typing_counter(bot, client):
    assert bot.handle_room_typing(ROOM, -1) == 0
    assert bot.handle_room_typing(ROOM, 1) == 1
    assert wait_for(lambda: (ROOM, True) in client.typing)
    assert bot.handle_room_typing(ROOM, 1) == 2
    assert bot.handle_room_typing(ROOM, -1) == 1
    assert (ROOM, False) not in client.typing
    assert bot.handle_room_typing(ROOM, -1) == 0
    assert wait_for(lambda: (ROOM, False) in client.typing)


def test_cancel_running_handlers(bot):
    outcome = []
    started = threading.Event()

    def slow(ctx, room, sender, args):
        started.set()
        outcome.append(ctx.wait(5))

    bot.register_command("slow", 0, "Waits", slow)
    thread = bot.handle_commands({"body": "bot-cmd: slow"}, ROOM, SENDER)
    assert started.wait(5)
    bot.cancel_running_handlers()
    thread.join(5)
    assert thread.is_alive() is False
    assert outcome == [True]


def test_send_html_notice(bot, client):
    event_id = bot.send_html_notice(ROOM, "<b>bold</b> text", SENDER)
    assert event_id == "$event1"
    content = client.sent[0][1]
    assert content["body"] == "bold text"
    assert content["formatted_body"] == "<b>bold</b> text"
    assert content["format"] == "org.matrix.custom.html"
    assert content["msgtype"] == "m.notice"


def test_send_markdown_notice(bot, client):
    first_id = bot.send_markdown_notice(ROOM, "**bold**")
    second_id = bot.send_markdown_notice(ROOM, "hello")
    assert first_id == "$event1"
    assert second_id == "$event2"
    formatted = client.sent[0][1]
    plain = client.sent[1][1]
    assert formatted["formatted_body"] == "<strong>bold</strong>"
    assert formatted["body"] == "**bold**"
    assert "formatted_body" not in plain
    assert plain["body"] == "hello"
    assert plain["m.mentions"] == {}


def test_send_markdown_notice_escapes_raw_html(bot, client):
    event_id = bot.send_markdown_notice(ROOM, "a <script>x</script> **b**")
    assert event_id == "$event1"
    formatted = client.sent[0][1]["formatted_body"]
    assert "<script>" not in formatted
    assert "<strong>b</strong>" in formatted