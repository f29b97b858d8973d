import asyncio
import base64

import httpx
import pytest

from conftest import BASE_URL, FakeDialogueServer, make_wav
from voice_dialogue.core.types import Clip
from voice_dialogue.errors import ApiError
from voice_dialogue.net.client import STREAM_PREFIX, DialogueClient, parse_interaction


def clip() -> Clip:
    return Clip(data=make_wav(0.1), sample_rate=16_000, num_samples=1600)


def test_start_session_posts_persona():
    server = FakeDialogueServer()

    async def scenario():
        client = server.client()
        try:
            return await client.start_session("child")
        finally:
            await client.aclose()

    assert asyncio.run(scenario()) == "sess-1"
    req = server.requests[0]
    assert req.method == "POST"
    assert req.url.path == f"{STREAM_PREFIX}/start"
    assert req.url.params["persona"] == "child"


@pytest.mark.parametrize("status", [400, 500, 503])
def test_start_session_rejects_error_status(status):
    server = FakeDialogueServer()
    server.start_status = status

    async def scenario():
        with pytest.raises(ApiError) as info:
            await server.client().start_session("adult")
        return info.value

    err = asyncio.run(scenario())
    assert str(status) in str(err)


def test_start_session_requires_an_id():
    async def handler(request):
        return httpx.Response(200, json={"status": "ok"})

    client = DialogueClient(BASE_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(ApiError):
        asyncio.run(client.start_session("adult"))


def test_submit_utterance_sends_multipart_and_parses_reply():
    server = FakeDialogueServer()

    async def scenario():
        return await server.client().submit_utterance("sess-1", clip())

    result = asyncio.run(scenario())
    req = server.requests[0]
    body = req.content
    assert req.url.path.endswith("/interact")
    assert req.headers["content-type"].startswith("multipart/form-data")
    assert b'name="sessionId"' in body
    assert b"sess-1" in body
    assert b'name="audioChunk"; filename="audio.wav"' in body
    assert b"Content-Type: audio/wav" in body

    assert result.success
    assert result.reply_text == "Hello there!"
    assert result.reply_audio == server.reply_audio
    assert result.has_audio
    assert result.progress.goals_met == 2
    assert result.progress.total_goals == 16
    assert result.progress.current_goals == ("greet", "ask name")
    assert result.progress.fraction == pytest.approx(0.125)


def test_submit_utterance_error_status_raises():
    server = FakeDialogueServer()
    server.interact_status = 500
    with pytest.raises(ApiError, match="500"):
        asyncio.run(server.client().submit_utterance("sess-1", clip()))


def test_submit_utterance_malformed_body_raises():
    async def handler(request):
        return httpx.Response(200, content=b"<html>oops</html>")

    client = DialogueClient(BASE_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(ApiError):
        asyncio.run(client.submit_utterance("sess-1", clip()))


def test_submit_utterance_transport_error_raises():
    async def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = DialogueClient(BASE_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(ApiError):
        asyncio.run(client.submit_utterance("sess-1", clip()))


def test_notifications_send_form_fields():
    server = FakeDialogueServer()

    async def scenario():
        client = server.client()
        started = await client.notify_playback_started("sess-1", "Hi there", 400)
        finished = await client.notify_playback_finished("sess-1")
        ended = await client.end_session("sess-1")
        return started, finished, ended

    assert asyncio.run(scenario()) == (True, True, True)
    assert server.paths == ["ai-speaking", "ai-finished", "complete"]
    speaking = server.requests[0].content.decode()
    assert "sessionId=sess-1" in speaking
    assert "message=Hi+there" in speaking
    assert "estimatedDurationMs=400" in speaking
    assert server.requests[2].url.params["sessionId"] == "sess-1"


def test_notification_failures_are_swallowed():
    server = FakeDialogueServer()
    server.notify_status = 502

    async def scenario():
        client = server.client()
        return (
            await client.notify_playback_started("sess-1", "", 0),
            await client.notify_playback_finished("sess-1"),
            await client.end_session("sess-1"),
        )

    assert asyncio.run(scenario()) == (False, False, False)


def test_missing_base_url_is_an_api_error():
    client = DialogueClient("", client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
    with pytest.raises(ApiError, match="Server URL missing"):
        asyncio.run(client.start_session("adult"))
    assert asyncio.run(client.end_session("sess-1")) is False


def test_parse_interaction_tolerates_missing_fields():
    result = parse_interaction({"success": True, "aiResponse": "ok"})
    assert result.reply_audio is None
    assert result.progress is None
    assert not result.has_audio

    audio = base64.b64encode(b"RIFF").decode()
    failed = parse_interaction({"success": False, "audioResponse": audio})
    assert failed.reply_audio == b"RIFF"
    assert not failed.has_audio
