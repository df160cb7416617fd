import asyncio
import json

from conftest import FakeVisionModel

from server.generation import GenerationSession, SessionState
from server.streaming import SessionStream
from shared.schemas import MetadataEvent

MESSAGES = [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]


def collect(vision, metadata=None, complete_extra=None):
    session = GenerationSession(vision)
    session.prepare(MESSAGES)

    async def scenario():
        stream = SessionStream(session, metadata=metadata, complete_extra=complete_extra)
        stream.start()
        return [json.loads(line) async for line in stream.events()]

    return session, asyncio.run(scenario())


def test_fragments_are_streamed_in_order_then_complete():
    session, events = collect(FakeVisionModel(fragments=["Hel", "lo"]))
    assert events == [
        {"type": "chunk", "data": "Hel"},
        {"type": "chunk", "data": "lo"},
        {"type": "complete", "fullResponse": "Hello"},
    ]
    assert session.state is SessionState.COMPLETE


def test_metadata_comes_first_and_extras_reach_complete():
    metadata = MetadataEvent(image_url="http://localhost:3010/uploads/1-a.png", message="Processing...\n\n")
    _, events = collect(
        FakeVisionModel(fragments=["ok"]),
        metadata=metadata,
        complete_extra={"image_url": "http://localhost:3010/uploads/1-a.png"},
    )
    assert events[0] == {
        "type": "metadata",
        "imageUrl": "http://localhost:3010/uploads/1-a.png",
        "message": "Processing...\n\n",
    }
    assert events[-1]["imageUrl"] == "http://localhost:3010/uploads/1-a.png"
    assert events[-1]["fullResponse"] == "ok"


def test_model_error_after_start_ends_with_error_event():
    vision = FakeVisionModel(fragments=["Hel", "lo"], fail_at=1)
    session, events = collect(vision)
    assert events[0] == {"type": "chunk", "data": "Hel"}
    assert events[-1]["type"] == "error"
    assert "model exploded" in events[-1]["error"]
    assert not any(event["type"] == "complete" for event in events)
    assert vision.ledger.balanced


def test_disconnect_cancels_generation_and_releases_tensors():
    vision = FakeVisionModel(fragments=["a", "b", "c"], wait_for_stop=True)
    session = GenerationSession(vision)
    session.prepare(MESSAGES)

    async def scenario():
        stream = SessionStream(session)
        stream.start()
        events = stream.events()
        first = await events.__anext__()
        await events.aclose()
        return json.loads(first)

    first = asyncio.run(scenario())
    session._thread.join(timeout=5)

    assert first == {"type": "chunk", "data": "a"}
    assert session.cancelled
    assert session.state is SessionState.FAILED
    assert session.closed
    assert vision.ledger.balanced
