"""Tests for the socket connectors using scripted fake sockets."""

import asyncio
import json
from types import SimpleNamespace

import aiohttp
import pytest

from livestream_events.api.twitch import TokenInfo
from livestream_events.connections.base import BackoffPolicy, ReconnectPhase
from livestream_events.connections.tiktok import TikTokRelayConnector
from livestream_events.connections.twitch import TwitchChatConnector
from livestream_events.core.credentials import CredentialProvider
from livestream_events.core.models import ConnectionState, ConnectionStatus, RawEvent

FAST = BackoffPolicy(initial_delay=0.01, max_delay=0.01, jitter=0.0)

ROOMSTATE = "@room-id=9001;slow=0 :tmi.twitch.tv ROOMSTATE #testchannel"
PRIVMSG = (
    "@id=msg-1;user-id=111;display-name=Viewer "
    ":viewer!viewer@viewer.tmi.twitch.tv PRIVMSG #testchannel :hello"
)


def _text(data):
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data)


class FakeIrcSocket:
    """Delivers scripted lines, then either hangs or goes silent."""

    def __init__(self, lines=(), silent=False):
        self.lines = list(lines)
        self.silent = silent
        self.sent = []
        self.closed = False

    async def send_str(self, data):
        self.sent.append(data)

    async def receive(self, timeout=None):
        if self.lines:
            return _text(self.lines.pop(0))
        if self.silent:
            raise asyncio.TimeoutError()
        await asyncio.Event().wait()

    async def close(self):
        self.closed = True


class FakeHelix:
    def __init__(self, valid=True):
        self.valid = valid
        self.validated = []
        self.followers = []
        self.viewers = None

    async def validate_token(self, token):
        self.validated.append(token)
        if not self.valid:
            return None
        return TokenInfo(login="StreamBot", user_id="42")

    async def get_chat_badges(self, broadcaster_id):
        return {}

    async def get_followers(self, broadcaster_id, first=20):
        return list(self.followers)

    async def get_viewer_count(self, login):
        return self.viewers


class ScriptedTwitch(TwitchChatConnector):
    def __init__(self, credentials, helix, sockets):
        super().__init__(credentials, helix, poll_helix=False, state_debounce=0)
        self.policy = FAST
        self.sockets = list(sockets)
        self.opened = []

    async def _open_socket(self):
        socket = self.sockets.pop(0) if self.sockets else FakeIrcSocket()
        self.opened.append(socket)
        return socket


class RefreshingProvider(CredentialProvider):
    def __init__(self, settings, new_token=None):
        super().__init__(settings)
        self.new_token = new_token

    async def _refresh(self, platform):
        if self.new_token is None:
            return False
        self.set_tokens(platform, self.new_token)
        return True


def _drain(connector):
    items = []
    while not connector.queue.empty():
        items.append(connector.queue.get_nowait())
    return items


def _statuses(items):
    return [i.status for i in items if isinstance(i, ConnectionState)]


async def _until(condition, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# --- Twitch ---


@pytest.mark.asyncio
async def test_twitch_joins_and_emits(settings):
    socket = FakeIrcSocket([ROOMSTATE, PRIVMSG, "PING :tmi.twitch.tv"])
    connector = ScriptedTwitch(CredentialProvider(settings), FakeHelix(), [socket])

    connector.start()
    await _until(lambda: "PONG :tmi.twitch.tv" in socket.sent)
    await connector.stop()

    assert socket.sent[:5] == [
        "CAP REQ :twitch.tv/tags",
        "CAP REQ :twitch.tv/commands",
        "PASS oauth:twitch-access",
        "NICK streambot",
        "JOIN #testchannel",
    ]
    items = _drain(connector)
    raws = [i for i in items if isinstance(i, RawEvent)]
    assert [r.kind for r in raws] == ["privmsg"]
    assert raws[0].payload["tags"]["id"] == "msg-1"
    assert _statuses(items) == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
    ]
    assert settings.twitch.login_name == "StreamBot"
    assert socket.closed


@pytest.mark.asyncio
async def test_twitch_reconnect_request(settings):
    first = FakeIrcSocket([ROOMSTATE, ":tmi.twitch.tv RECONNECT"])
    second = FakeIrcSocket([ROOMSTATE])
    connector = ScriptedTwitch(CredentialProvider(settings), FakeHelix(), [first, second])

    connector.start()
    await _until(
        lambda: connector.connect_attempts == 2 and connector.phase == ReconnectPhase.CONNECTED
    )
    await connector.stop()

    items = _drain(connector)
    assert _statuses(items) == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
    ]
    dropped = [i for i in items if isinstance(i, ConnectionState)][2]
    assert "reconnect" in dropped.reason
    assert connector.attempt == 0


@pytest.mark.asyncio
async def test_twitch_keepalive_detects_dead_socket(settings):
    silent = FakeIrcSocket([ROOMSTATE], silent=True)
    connector = ScriptedTwitch(CredentialProvider(settings), FakeHelix(), [silent])

    connector.start()
    await _until(lambda: connector.connect_attempts == 2)
    await connector.stop()

    assert silent.sent[-1] == "PING :tmi.twitch.tv"
    states = [i for i in _drain(connector) if isinstance(i, ConnectionState)]
    assert states[2].status == ConnectionStatus.DISCONNECTED
    assert "PONG" in states[2].reason


@pytest.mark.asyncio
async def test_twitch_invalid_token_without_refresh_is_terminal(settings):
    settings.twitch.refresh_token = ""
    helix = FakeHelix(valid=False)
    connector = ScriptedTwitch(CredentialProvider(settings), helix, [])

    connector.start()
    await connector.wait()

    assert connector.terminal
    assert connector.connect_attempts == 1
    assert connector.opened == []
    states = [i for i in _drain(connector) if isinstance(i, ConnectionState)]
    assert states[-1].terminal


@pytest.mark.asyncio
async def test_twitch_login_notice_with_failed_refresh_is_terminal(settings):
    notice = FakeIrcSocket([":tmi.twitch.tv NOTICE * :Login authentication failed"])
    connector = ScriptedTwitch(RefreshingProvider(settings), FakeHelix(), [notice])

    connector.start()
    await connector.wait()

    assert connector.terminal
    assert connector.connect_attempts == 1
    assert notice.closed


@pytest.mark.asyncio
async def test_twitch_login_notice_retries_with_refreshed_token(settings):
    notice = FakeIrcSocket([":tmi.twitch.tv NOTICE * :Login authentication failed"])
    good = FakeIrcSocket([ROOMSTATE])
    provider = RefreshingProvider(settings, new_token="fresh-token")
    connector = ScriptedTwitch(provider, FakeHelix(), [notice, good])

    connector.start()
    await _until(lambda: connector.phase == ReconnectPhase.CONNECTED)
    await connector.stop()

    assert "PASS oauth:fresh-token" in good.sent
    assert not connector.terminal


@pytest.mark.asyncio
async def test_twitch_helix_poll_seeds_then_emits_new_followers(settings):
    helix = FakeHelix()
    connector = ScriptedTwitch(CredentialProvider(settings), helix, [])
    connector._broadcaster_id = "9001"
    connector._channel = "testchannel"

    helix.followers = [{"user_id": "2"}, {"user_id": "1"}]
    helix.viewers = 10
    await connector.poll_helix_once()
    raws = [i for i in _drain(connector) if isinstance(i, RawEvent)]
    assert [r.kind for r in raws] == ["metric"]

    helix.followers = [{"user_id": "4"}, {"user_id": "3"}, {"user_id": "2"}, {"user_id": "1"}]
    helix.viewers = None
    await connector.poll_helix_once()
    raws = [i for i in _drain(connector) if isinstance(i, RawEvent)]
    assert [r.payload["user_id"] for r in raws] == ["3", "4"]


# --- lifecycle ---


@pytest.mark.asyncio
async def test_stop_is_idempotent(settings):
    connector = ScriptedTwitch(CredentialProvider(settings), FakeHelix(), [FakeIrcSocket()])
    connector.start()
    await _until(lambda: connector.connect_attempts == 1)

    await connector.stop()
    await connector.stop()

    states = [i for i in _drain(connector) if isinstance(i, ConnectionState)]
    stopped = [s for s in states if s.reason == "stopped"]
    assert len(stopped) == 1
    assert not connector.is_running
    assert connector.phase == ReconnectPhase.IDLE


@pytest.mark.asyncio
async def test_stop_before_start(settings):
    connector = ScriptedTwitch(CredentialProvider(settings), FakeHelix(), [])
    await connector.stop()
    await connector.stop()
    assert _statuses(_drain(connector)) == [ConnectionStatus.DISCONNECTED]


@pytest.mark.asyncio
async def test_states_are_debounced(settings):
    connector = ScriptedTwitch(CredentialProvider(settings), FakeHelix(), [])
    connector._state_debounce = 0.05
    connector._set_state(ConnectionStatus.DISCONNECTED, "blip")
    connector._set_state(ConnectionStatus.CONNECTED)
    assert connector.queue.empty()

    await asyncio.sleep(0.1)
    assert _statuses(_drain(connector)) == [ConnectionStatus.CONNECTED]


# --- TikTok ---


class FakeRelaySocket:
    def __init__(self, frames):
        self.frames = [_text(f if isinstance(f, str) else json.dumps(f)) for f in frames]
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame

    async def close(self):
        self.closed = True


class ScriptedRelay(TikTokRelayConnector):
    def __init__(self, sockets):
        super().__init__("ws://relay.test/", state_debounce=0)
        self.policy = FAST
        self.sockets = list(sockets)

    async def _open_socket(self):
        if not self.sockets:
            await asyncio.Event().wait()
        return self.sockets.pop(0)


@pytest.mark.asyncio
async def test_tiktok_relay_frames_and_states():
    socket = FakeRelaySocket(
        [
            {"event": "chat", "data": {"uniqueId": "a", "comment": "hi"}},
            "not json",
            [1, 2, 3],
            {"event": "disconnected", "data": {}},
            {"event": "connected", "data": {}},
            {"event": "gift", "data": {"uniqueId": "b", "giftName": "Rose"}},
        ]
    )
    connector = ScriptedRelay([socket])

    connector.start()
    await _until(lambda: connector.connect_attempts == 2)
    await connector.stop()

    items = _drain(connector)
    raws = [i for i in items if isinstance(i, RawEvent)]
    assert [r.payload["event"] for r in raws] == ["chat", "gift"]
    assert all(r.kind == "frame" for r in raws)
    assert _statuses(items) == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DEGRADED,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,  # relay closed
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,  # stopped
    ]
    assert socket.closed
