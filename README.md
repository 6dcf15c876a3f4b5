# matrixcmdbot

A small Matrix bot library. The bot joins the rooms it is invited to and
runs commands addressed to it.

## How a message becomes a command

For each `m.room.message` event the bot:

1. ignores notices (`msgtype` `m.notice`);
2. ignores the message unless it mentions the bot: either the logged-in user
   id is in `m.mentions.user_ids`, or the configured `botname` appears in the
   body;
3. ignores messages whose sender contains the configured `username`;
4. treats the body as a command only if it starts with the localpart of
   `username` followed by `": "`. For a bot configured as
   `@bot-cmd:example.com`:

```
bot-cmd: help
bot-cmd: shell uptime
```

The first word after the prefix is the command; the rest, trimmed, is passed
to the handler as its arguments. Unknown commands are logged and ignored.
`parse_command(body, bot_user)` does this split on its own and returns
`(command, args)` or `None`.

Built-in commands:

| Command | Power required | What it does |
|---------|----------------|--------------|
| `help`  | 0 | Lists the registered commands with their power level and description |
| `shell` | 0 | Runs the arguments with `bash -c` on the host and replies with the combined output |

`shell` replies with the output in a code block on success, with the exit
status and output on failure, and with a time-out notice when the command
runs longer than 30 seconds. An empty `shell` command gets the reply
"Команда пуста.". Anyone who can address the bot can run commands on the
host, so only invite it to rooms you trust.

While `help` prepares its reply the bot shows a typing indicator in the room.

Membership events: on `invite` or `join` the bot joins the room; on `leave`
or `ban` it logs the reason.

## Configuration

Settings are read from a YAML file:

```yaml
homeserver: https://matrix.example.com
botname: bot-cmd
username: "@bot-cmd:example.com"
password: password
loglevel: debug
database:
  dbpath: bot.db
  pickle: placeholder
```

`load_config(path)` in `matrixcmdbot.config` returns a `Config`; its
`database` field is a `DatabaseConfig`. `Config.from_dict` builds one from an
already parsed mapping and raises `ValueError` if it is not a mapping.

## Running the bot

```python
import threading

import httpx

from matrixcmdbot.bot import MatrixBot
from matrixcmdbot.client import MatrixClient
from matrixcmdbot.config import load_config
from matrixcmdbot.syncing import Syncer, setup_syncer

config = load_config("config.yaml")
client = MatrixClient(config.homeserver, httpx.Client())
client.login(config.username, config.password)

bot = MatrixBot(config, client)
syncer = Syncer(client)
setup_syncer(bot, syncer)

stop = threading.Event()
try:
    syncer.run(stop)
finally:
    bot.cancel_running_handlers()
    client.close()
```

`Syncer.run` long-polls `/sync` until the event is set, retrying after failed
requests. `Syncer.process_sync` dispatches the events of one sync answer,
which is handy for feeding events in by hand.

## Adding commands

A handler is called in its own thread with a `threading.Event` that is set
when the bot cancels it (`cancel_running_handlers`), followed by the room id,
the sender and the argument string:

```python
def handle_ping(cancelled, room, sender, args):
    bot.send_text_notice(room, "pong", sender)

bot.register_command("ping", 0, "Answers with pong", handle_ping)
```

A later command with the same pattern replaces the earlier one in dispatch;
both still appear in `help_text()`.

Replies can be sent as plain text (`send_text_notice`), HTML
(`send_html_notice`, with a plain-text body made by `html_to_text`) or
Markdown (`send_markdown_notice`); each mentions the user passed as `at` and
returns the event id.

`MatrixClient` covers login, sending messages, typing notifications, joining
rooms and sync. Error answers from the homeserver raise `MatrixError`, which
carries `status_code`, `errcode` and `message`.

## What it does not do

- No end-to-end encryption: messages are sent and read in the clear, so the
  bot does not understand encrypted rooms. The `database` settings are read
  but not used.
- The power level of a command is only shown in the help; it is not checked
  against the sender's power in the room.
- There is no command-line program; start the bot from Python as shown above.