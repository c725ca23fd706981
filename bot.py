import asyncio
import json
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from distributor import DeliveryFailed, DistributionInProgress, InsufficientSupply, RecordNotSaved
from records import FileUnavailable

HELIX_URL = "https://api.twitch.tv/helix"
TWITCH_IRC_URL = "wss://irc-ws.chat.twitch.tv:443"
RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0

SEND_COMMAND = "!spgsend"
STATUS_COMMAND = "!spgstatus"


# -----------------------------
# Twitch Helix API (whispers)
# -----------------------------
class TwitchApi:
    def __init__(self, client_id: str, token: str = None):
        self.client_id = client_id
        self.token = token
        self._user_ids = {}

    def _headers(self) -> dict:
        if not self.token:
            raise RuntimeError("The Twitch API was used before the bot was authorised")
        return {"Authorization": f"Bearer {self.token}", "Client-Id": self.client_id}

    async def get_user(self, login: str = None) -> dict:
        # Without a login Helix returns the user the token belongs to
        params = {"login": login} if login else {}

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as session:
            async with session.get(f"{HELIX_URL}/users", headers=self._headers(), params=params) as resp:
                txt = await resp.text()
                if resp.status != 200:
                    raise RuntimeError(f"/helix/users failed ({resp.status}): {txt[:300]}")
                data = json.loads(txt).get("data") or []

        if not data:
            raise RuntimeError(f"Twitch user not found: {login}")
        return data[0]

    async def user_id(self, login: str = None) -> str:
        key = (login or "").lower()
        if key not in self._user_ids:
            user = await self.get_user(login)
            self._user_ids[key] = user["id"]
        return self._user_ids[key]

    async def send_whisper(self, login: str, text: str) -> bool:
        from_id = await self.user_id()
        to_id = await self.user_id(login)
        params = {"from_user_id": from_id, "to_user_id": to_id}

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as session:
            async with session.post(
                f"{HELIX_URL}/whispers", headers=self._headers(), params=params, json={"message": text}
            ) as resp:
                if resp.status == 204:
                    return True
                txt = await resp.text()
                raise RuntimeError(f"/helix/whispers failed ({resp.status}): {txt[:300]}")


# -----------------------------
# IRC parsing
# -----------------------------
@dataclass
class IrcMessage:
    command: str
    params: list = field(default_factory=list)
    prefix: str = ""
    trailing: str = ""

    @property
    def nick(self) -> str:
        return self.prefix.split("!", 1)[0]

    @property
    def channel(self) -> str:
        return self.params[0].lstrip("#") if self.params else ""


def parse_irc_line(line: str) -> Optional[IrcMessage]:
    line = line.rstrip("\r\n")
    if not line:
        return None

    # IRCv3 tags are not used
    if line.startswith("@"):
        _, _, line = line.partition(" ")

    prefix = ""
    if line.startswith(":"):
        prefix, _, line = line[1:].partition(" ")

    line, _, trailing = line.partition(" :")
    parts = line.split()
    if not parts:
        return None
    return IrcMessage(command=parts[0].upper(), params=parts[1:], prefix=prefix, trailing=trailing)


# -----------------------------
# Chat bot
# -----------------------------
class ChatBot:
    def __init__(self, token: str, username: str, channels: list, distributor, operators: list = None,
                 url: str = TWITCH_IRC_URL):
        self.token = token
        self.username = username.lower()
        self.channels = channels
        self.distributor = distributor
        self.operators = {o.lower() for o in (operators if operators is not None else channels)}
        self.url = url

        self._ws = None
        self._run_task: Optional[asyncio.Task] = None
        self._stopped = False
        self._connected = False
        self._sleep = asyncio.sleep

    async def send_raw(self, line: str):
        await self._ws.send_str(line)

    async def say(self, channel: str, text: str):
        if self._ws is None or self._ws.closed:
            print(f"[Bot] Not connected, could not say in #{channel}: {text}")
            return
        await self.send_raw(f"PRIVMSG #{channel} :{text}")

    async def run(self):
        delay = RECONNECT_DELAY
        while not self._stopped:
            connected = await self._connect_once()
            if self._stopped:
                break
            if connected:
                delay = RECONNECT_DELAY
            print(f"[Bot] Reconnecting to Twitch chat in {delay:g} seconds")
            await self._sleep(delay)
            delay = min(delay * 2, MAX_RECONNECT_DELAY)

        if self._run_task is not None and not self._run_task.done():
            print("[Bot] Waiting for the running key distribution to finish")
            await self._run_task

    async def stop(self):
        self._stopped = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    async def _connect_once(self) -> bool:
        """One chat session; True if Twitch accepted the login before it ended."""
        self._connected = False
        print("[Bot] Connecting to Twitch chat")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(self.url) as ws:
                    self._ws = ws
                    await self.send_raw(f"PASS oauth:{self.token}")
                    await self.send_raw(f"NICK {self.username}")
                    for channel in self.channels:
                        await self.send_raw(f"JOIN #{channel}")

                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            for line in msg.data.split("\r\n"):
                                await self.handle_line(line)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            print(f"[Bot] WebSocket error: {ws.exception()}")
                            break
        except aiohttp.ClientError as e:
            print(f"[Bot] Could not reach Twitch chat: {e}")
        finally:
            self._ws = None
        print("[Bot] Disconnected from Twitch chat")
        return self._connected

    async def handle_line(self, line: str):
        msg = parse_irc_line(line)
        if msg is None:
            return

        if msg.command == "PING":
            await self.send_raw(f"PONG :{msg.trailing}")
        elif msg.command == "001":
            self._connected = True
            print(f"[Bot] Twitch bot successfully connected as {self.username}")
        elif msg.command == "RECONNECT":
            # Twitch is about to drop this connection; run() opens a new one
            print("[Bot] Twitch asked the bot to reconnect")
            await self._ws.close()
        elif msg.command == "NOTICE" and "authentication failed" in msg.trailing.lower():
            raise RuntimeError(f"Twitch chat login failed: {msg.trailing}")
        elif msg.command == "PRIVMSG":
            await self.on_message(msg.channel, msg.nick, msg.trailing)

    async def on_message(self, channel: str, user: str, text: str):
        if user.lower() == self.username:
            return

        print(f"[Bot] [{user}] {text}")
        content = text.strip().lower()

        if content.startswith(SEND_COMMAND):
            if user.lower() not in self.operators:
                print(f"[Bot] Ignoring {SEND_COMMAND} from {user}, not an operator")
                return
            await self.start_distribution(channel)
        elif content.startswith(STATUS_COMMAND):
            if user.lower() not in self.operators:
                print(f"[Bot] Ignoring {STATUS_COMMAND} from {user}, not an operator")
                return
            report = self.distributor.status_report()
            await self.say(channel, report.summary())

    async def start_distribution(self, channel: str):
        if self.distributor.running or (self._run_task is not None and not self._run_task.done()):
            await self.say(channel, "Keys are already being sent, please wait for this run to finish.")
            return
        # Runs in the background so PINGs keep getting answered during send delays
        self._run_task = asyncio.create_task(self._distribute(channel))
        self._run_task.add_done_callback(self._on_run_done)

    async def _distribute(self, channel: str):
        await self.say(channel, "Sending keys, this will take a while...")
        try:
            sent = await self.distributor.run()
        except DeliveryFailed as e:
            print(f"[Bot] {e}")
            await self.say(
                channel,
                f"Stopped sending keys: could not whisper {e.recipient}. Keys sent so far are recorded, "
                f"use {SEND_COMMAND} to resume.",
            )
            return
        except RecordNotSaved as e:
            print(f"[Bot] {e}")
            await self.say(
                channel,
                f"Stopped sending keys: {e.recipient} got a key but it could not be saved to the files "
                f"(line {e.line_number}). Mark it by hand before using {SEND_COMMAND} again.",
            )
            return
        except (FileUnavailable, InsufficientSupply, DistributionInProgress) as e:
            print(f"[Bot] {e}")
            await self.say(channel, f"Could not send keys: {e}")
            return
        await self.say(channel, f"Done! {sent} keys sent.")

    def _on_run_done(self, task: asyncio.Task):
        if task.cancelled():
            print("[Bot] Key distribution was cancelled")
        elif task.exception() is not None:
            print(f"[Bot] Key distribution crashed: {task.exception()!r}")
