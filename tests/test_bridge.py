"""Tests for the bridge orchestrator and config system."""

import asyncio
from collections import deque

import pytest
import yaml

from callrelay.bridge import RealtimeBridge
from callrelay.config import DEFAULT_CONFIG_YAML, RelayConfig, load_config
from callrelay.errors import ConfigError


class TestRelayConfig:

    def test_default_config(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = RelayConfig()
        assert config.server.listen_port == 5050
        assert config.server.stream_path == "/media-stream"
        assert config.realtime.voice == "alloy"
        assert config.realtime.audio_format == "g711_ulaw"
        assert config.realtime.api_key == ""
        assert config.greeting.enabled is False
        assert config.realtime.session_ready_timeout == 3.0

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert RelayConfig().require_api_key() == "sk-env"

    def test_missing_api_key_raises(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigError):
            RelayConfig().require_api_key()

    def test_from_dict_full(self):
        config = RelayConfig.from_dict({
            "server": {"listen_port": 9000, "public_host": "relay.example.com"},
            "realtime": {"api_key": "sk-1", "voice": "echo"},
        })
        assert config.server.listen_port == 9000
        assert config.server.public_host == "relay.example.com"
        assert config.realtime.voice == "echo"

    def test_from_dict_shorthand(self):
        config = RelayConfig.from_dict({
            "port": 8080,
            "api_key": "sk-2",
            "voice": "shimmer",
            "log_level": "DEBUG",
        })
        assert config.server.listen_port == 8080
        assert config.realtime.api_key == "sk-2"
        assert config.realtime.voice == "shimmer"
        assert config.logging.level == "DEBUG"

    def test_from_dict_does_not_mutate_input(self):
        data = {"api_key": "sk-3"}
        RelayConfig.from_dict(data)
        assert data == {"api_key": "sk-3"}

    def test_endpoint_and_headers(self):
        config = RelayConfig.from_dict({"api_key": "sk-4", "model": "gpt-realtime"})
        assert config.realtime.endpoint == "wss://api.openai.com/v1/realtime?model=gpt-realtime"
        assert config.realtime.headers() == {
            "Authorization": "Bearer sk-4",
            "OpenAI-Beta": "realtime=v1",
        }

    def test_load_config_passthrough(self):
        original = RelayConfig()
        assert load_config(original) is original

    def test_load_config_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.yaml")

    def test_yaml_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-yaml")
        path = tmp_path / "relay.yaml"
        path.write_text(DEFAULT_CONFIG_YAML)
        config = load_config(path)
        assert config.realtime.api_key == "sk-yaml"
        assert config.server.incoming_call_path == "/incoming-call"

    def test_yaml_unset_env_expands_empty(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        path = tmp_path / "relay.yaml"
        path.write_text(DEFAULT_CONFIG_YAML)
        config = load_config(path)
        assert config.realtime.api_key == ""

    def test_default_yaml_is_valid(self):
        data = yaml.safe_load(DEFAULT_CONFIG_YAML)
        config = RelayConfig.from_dict(data)
        assert config.realtime.turn_detection == "server_vad"
        assert config.realtime.session_ready_timeout == 3.0


class TestRealtimeBridge:

    @pytest.fixture
    def make_bridge(self, config, fake_transport):
        def _make(realtime):
            return RealtimeBridge(config, realtime_transport_factory=lambda _cfg: realtime)
        return _make

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigError):
            RealtimeBridge({})

    @pytest.mark.asyncio
    async def test_telephony_close_closes_realtime(self, make_bridge, fake_transport):
        telephony = fake_transport()
        realtime = fake_transport(connected=False)
        bridge = make_bridge(realtime)

        task = asyncio.create_task(bridge.handle_telephony_connection(telephony))
        await asyncio.sleep(0.01)
        assert bridge.sessions.active_count == 1
        assert realtime.is_connected()

        telephony.close_from_peer()
        await asyncio.wait_for(task, 1)

        assert realtime.disconnect_calls == 1
        assert not realtime.is_connected()
        assert bridge.sessions.active_count == 0
        assert bridge.sessions.all_sessions == []

    @pytest.mark.asyncio
    async def test_realtime_close_keeps_call_up(self, make_bridge, fake_transport):
        telephony = fake_transport()
        realtime = fake_transport(connected=False)
        bridge = make_bridge(realtime)

        task = asyncio.create_task(bridge.handle_telephony_connection(telephony))
        await asyncio.sleep(0.01)
        realtime.close_from_peer()
        await asyncio.sleep(0.01)

        assert not task.done()
        assert telephony.is_connected()
        assert telephony.disconnect_calls == 0

        # Caller audio is now dropped instead of forwarded
        telephony.feed(
            {"event": "start", "start": {"streamSid": "S1"}},
            {"event": "media", "media": {"timestamp": 20, "payload": "AAA"}},
        )
        await asyncio.sleep(0.01)
        session = bridge.sessions.all_sessions[0]
        assert session.latest_media_timestamp == 20
        assert realtime.sent_of_type("type", "input_audio_buffer.append") == []

        telephony.close_from_peer()
        await asyncio.wait_for(task, 1)
        assert bridge.sessions.active_count == 0

    @pytest.mark.asyncio
    async def test_full_call_flow(self, make_bridge, fake_transport):
        telephony = fake_transport()
        realtime = fake_transport(connected=False)
        bridge = make_bridge(realtime)

        task = asyncio.create_task(bridge.handle_telephony_connection(telephony))
        realtime.feed({"type": "session.created", "session": {"id": "sess_1"}})
        await asyncio.sleep(0.01)
        assert realtime.sent_of_type("type", "session.update")

        telephony.feed(
            {"event": "connected", "protocol": "Call"},
            {"event": "start", "start": {"streamSid": "S1", "callSid": "CA1"}},
            {"event": "media", "media": {"timestamp": "100", "payload": "AAA"}},
        )
        await asyncio.sleep(0.02)

        assert realtime.sent_of_type("type", "input_audio_buffer.append") == [
            {"type": "input_audio_buffer.append", "audio": "AAA"}
        ]

        realtime.feed({"type": "response.audio.delta", "delta": "BBB", "item_id": "item_1"})
        await asyncio.sleep(0.01)
        assert [m["event"] for m in telephony.sent_json] == ["media", "mark"]

        telephony.feed({"event": "media", "media": {"timestamp": "700", "payload": "CCC"}})
        await asyncio.sleep(0.01)
        realtime.feed({"type": "input_audio_buffer.speech_started", "audio_start_ms": 650})
        await asyncio.sleep(0.01)

        truncates = realtime.sent_of_type("type", "conversation.item.truncate")
        assert truncates == [{
            "type": "conversation.item.truncate",
            "item_id": "item_1",
            "content_index": 0,
            "audio_end_ms": 600,
        }]
        assert telephony.sent_json[-1] == {"event": "clear", "streamSid": "S1"}

        telephony.close_from_peer()
        await asyncio.wait_for(task, 1)

    @pytest.mark.asyncio
    async def test_realtime_connect_failure_keeps_call_up(self, make_bridge, fake_transport):
        telephony = fake_transport()
        realtime = fake_transport(connected=False, fail_connect=True)
        bridge = make_bridge(realtime)

        task = asyncio.create_task(bridge.handle_telephony_connection(telephony))
        telephony.feed({"event": "media", "media": {"timestamp": 40, "payload": "AAA"}})
        await asyncio.sleep(0.01)

        session = bridge.sessions.all_sessions[0]
        assert session.realtime is None
        assert session.latest_media_timestamp == 40

        telephony.close_from_peer()
        await asyncio.wait_for(task, 1)
        assert realtime.disconnect_calls == 0

    @pytest.mark.asyncio
    async def test_telephony_served_while_realtime_connects(self, make_bridge, fake_transport):
        gate = asyncio.Event()
        telephony = fake_transport()
        realtime = fake_transport(connected=False, connect_gate=gate)
        bridge = make_bridge(realtime)

        task = asyncio.create_task(bridge.handle_telephony_connection(telephony))
        telephony.feed(
            {"event": "start", "start": {"streamSid": "S1"}},
            {"event": "media", "media": {"timestamp": "100", "payload": "AAA"}},
        )
        await asyncio.sleep(0.05)

        session = bridge.sessions.all_sessions[0]
        assert session.stream_sid == "S1"
        assert session.latest_media_timestamp == 100
        assert session.realtime is None

        # Audio received during the handshake is dropped, not replayed
        gate.set()
        await asyncio.sleep(0.01)
        assert session.realtime is realtime
        assert realtime.sent_of_type("type", "input_audio_buffer.append") == []

        telephony.feed({"event": "media", "media": {"timestamp": "120", "payload": "BBB"}})
        await asyncio.sleep(0.01)
        assert realtime.sent_of_type("type", "input_audio_buffer.append") == [
            {"type": "input_audio_buffer.append", "audio": "BBB"}
        ]

        telephony.close_from_peer()
        await asyncio.wait_for(task, 1)
        assert realtime.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_hangup_during_realtime_connect(self, make_bridge, fake_transport):
        gate = asyncio.Event()
        telephony = fake_transport()
        realtime = fake_transport(connected=False, connect_gate=gate)
        bridge = make_bridge(realtime)

        task = asyncio.create_task(bridge.handle_telephony_connection(telephony))
        await asyncio.sleep(0.01)
        telephony.close_from_peer()
        await asyncio.wait_for(task, 1)

        assert bridge.sessions.active_count == 0
        assert realtime.is_connected() is False
        assert realtime.disconnect_calls == 0

    @pytest.mark.asyncio
    async def test_caller_hangup_mid_response_keeps_realtime_loop(self, make_bridge, fake_transport):
        telephony = fake_transport()
        realtime = fake_transport(connected=False)
        bridge = make_bridge(realtime)

        task = asyncio.create_task(bridge.handle_telephony_connection(telephony))
        telephony.feed({"event": "start", "start": {"streamSid": "S1"}})
        await asyncio.sleep(0.01)
        session = bridge.sessions.all_sessions[0]

        # Twilio side stops accepting sends but its receive loop is still pending
        telephony._connected = False
        realtime.feed(
            {"type": "response.audio.delta", "delta": "BBB", "item_id": "item_1"},
            {"type": "response.audio.delta", "delta": "CCC", "item_id": "item_1"},
        )
        await asyncio.sleep(0.01)

        assert telephony.sent == []
        assert session.mark_queue == deque()
        assert session.media_frames_out == 0
        assert realtime.is_connected()

        telephony._connected = True
        telephony.close_from_peer()
        await asyncio.wait_for(task, 1)

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_isolated(self, config, fake_transport):
        links = [fake_transport(connected=False), fake_transport(connected=False)]
        pending = iter(links)
        bridge = RealtimeBridge(config, realtime_transport_factory=lambda _cfg: next(pending))

        tel_a, tel_b = fake_transport(), fake_transport()
        task_a = asyncio.create_task(bridge.handle_telephony_connection(tel_a))
        task_b = asyncio.create_task(bridge.handle_telephony_connection(tel_b))
        await asyncio.sleep(0.01)
        assert bridge.sessions.active_count == 2

        tel_a.feed({"event": "start", "start": {"streamSid": "A"}})
        tel_b.feed({"event": "start", "start": {"streamSid": "B"}})
        await asyncio.sleep(0.01)
        links[0].feed({"type": "response.audio.delta", "delta": "for-a"})
        await asyncio.sleep(0.01)

        assert [m["streamSid"] for m in tel_a.sent_json] == ["A", "A"]
        assert tel_b.sent == []

        tel_a.close_from_peer()
        await asyncio.wait_for(task_a, 1)
        assert bridge.sessions.active_count == 1
        assert links[1].is_connected()

        tel_b.close_from_peer()
        await asyncio.wait_for(task_b, 1)
        assert bridge.sessions.active_count == 0


class TestHTTPHandler:

    class _Request:
        def __init__(self, path, host="relay.example.com"):
            self.path = path
            self.host = host

    @pytest.mark.asyncio
    async def test_index(self, config):
        bridge = RealtimeBridge(config)
        status, content_type, body = await bridge.handle_http(self._Request("/"))
        assert status == 200
        assert content_type == "application/json"
        assert "running" in body

    @pytest.mark.asyncio
    async def test_incoming_call_twiml(self, config):
        bridge = RealtimeBridge(config)
        status, content_type, body = await bridge.handle_http(self._Request("/incoming-call"))
        assert status == 200
        assert content_type == "text/xml"
        assert '<Stream url="wss://relay.example.com/media-stream"' in body

    @pytest.mark.asyncio
    async def test_public_host_overrides_request_host(self, config):
        config.server.public_host = "public.example.com"
        bridge = RealtimeBridge(config)
        _, _, body = await bridge.handle_http(self._Request("/incoming-call", host="localhost:5050"))
        assert "wss://public.example.com/media-stream" in body

    @pytest.mark.asyncio
    async def test_unknown_path(self, config):
        bridge = RealtimeBridge(config)
        status, _, _ = await bridge.handle_http(self._Request("/nope"))
        assert status == 404
