"""Tests for outcome event sinks."""

import asyncio
import json

import httpx
from conftest import RecordingSink

from email_relay.models import RelayEvent
from email_relay.notifier_client import EventDispatcher, LoggingEventSink, WebhookEventSink


class FailingSink:
    async def emit(self, event):
        raise RuntimeError("sink down")


def injected_event():
    return RelayEvent(event_type="command_injected", token="XYZ789", target="claude-taskping", strategy="tmux")


class TestEventDispatcher:
    """Tests for fan-out to sinks."""

    def test_failing_sink_does_not_block_others(self):
        recording = RecordingSink()
        dispatcher = EventDispatcher([FailingSink(), recording])
        asyncio.run(dispatcher.emit(injected_event()))

        assert recording.types() == ["command_injected"]
        assert len(dispatcher.history) == 1

    def test_default_sink_is_logging(self):
        assert isinstance(EventDispatcher().sinks[0], LoggingEventSink)

    def test_history_is_bounded(self):
        dispatcher = EventDispatcher([RecordingSink()])

        async def emit_many():
            for _ in range(120):
                await dispatcher.emit(injected_event())

        asyncio.run(emit_many())
        assert len(dispatcher.history) == 100


class TestWebhookEventSink:
    """Tests for the HTTP webhook sink."""

    def test_posts_json_event(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(200)

        async def run():
            sink = WebhookEventSink("https://hooks.example.com/relay")
            sink._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            await sink.emit(injected_event())
            await sink.close()

        asyncio.run(run())

        assert received[0]["event_type"] == "command_injected"
        assert received[0]["token"] == "XYZ789"

    def test_http_error_is_logged_not_raised(self):
        async def run():
            sink = WebhookEventSink("https://hooks.example.com/relay")
            sink._client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
            await sink.emit(injected_event())
            await sink.close()

        asyncio.run(run())
