"""Tests for document handlers and the versioned document registry."""

import uuid

import pytest

from app.services.documents import DocumentRegistry, UnsupportedKindError, strip_code_fences
from app.services.llm_client import StepFinish, TextDelta
from app.services.stream import DataStream, DataType
from tests.fakes.fake_llm import FakeLLM


async def _drain(stream: DataStream) -> list:
    await stream.close()
    return [part async for part in stream]


def _data_events(parts) -> list[tuple[str, object]]:
    return [(p.data.type.value, p.data.content) for p in parts if p.type == "data"]


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("```python\nprint('hi')\n```", "print('hi')"),
        ("```\na,b\n1,2\n```\n", "a,b\n1,2"),
        ("print('no fences')", "print('no fences')"),
        ("text with ``` inside", "text with ``` inside"),
    ],
)
def test_strip_code_fences(raw, expected):
    assert strip_code_fences(raw) == expected


def test_unknown_kind_is_rejected(db_session):
    registry = DocumentRegistry(db_session, FakeLLM())
    assert set(registry.kinds) == {"text", "code", "image", "sheet", "widget"}
    with pytest.raises(UnsupportedKindError):
        registry.get("spreadsheet")


@pytest.mark.asyncio
async def test_create_streams_persists_and_indexes(db_session, user_id):
    llm = FakeLLM(steps=[[TextDelta("Roses are "), TextDelta("red. Violets are blue."), StepFinish("stop")]])
    registry = DocumentRegistry(db_session, llm)
    stream = DataStream()
    doc_id = uuid.uuid4()

    document = await registry.create_document(
        document_id=doc_id, title="A poem", kind="text", user_id=user_id, stream=stream
    )

    assert document.content == "Roses are red. Violets are blue."
    assert (await registry.store.get_latest(doc_id)).content == document.content

    events = _data_events(await _drain(stream))
    assert all(kind == "content-update" for kind, _ in events)
    assert "".join(content for _, content in events) == document.content

    indexed = await registry.retrieval.store.list_recent()
    assert sorted(e.knowledge for e in indexed) == ["Roses are red.", "Violets are blue."]
    assert all(e.title == "A poem" for e in indexed)
    assert llm.calls[0]["messages"] == [{"role": "user", "content": "A poem"}]


@pytest.mark.asyncio
async def test_code_document_strips_fences(db_session, user_id):
    llm = FakeLLM(steps=[[TextDelta("```python\nprint(1)\n```"), StepFinish("stop")]])
    registry = DocumentRegistry(db_session, llm)

    document = await registry.create_document(
        document_id=uuid.uuid4(), title="Print one", kind="code", user_id=user_id, stream=DataStream()
    )
    assert document.content == "print(1)"


@pytest.mark.asyncio
async def test_update_appends_version(db_session, user_id):
    llm = FakeLLM(
        steps=[
            [TextDelta("Hello world."), StepFinish("stop")],
            [TextDelta("Hello, brave new world."), StepFinish("stop")],
        ]
    )
    registry = DocumentRegistry(db_session, llm)
    doc_id = uuid.uuid4()
    original = await registry.create_document(
        document_id=doc_id, title="Greeting", kind="text", user_id=user_id, stream=DataStream()
    )

    updated = await registry.update_document(
        document=original, description="Make it grander", user_id=user_id, stream=DataStream()
    )

    versions = await registry.store.list_versions(doc_id)
    assert [v.content for v in versions] == ["Hello world.", "Hello, brave new world."]
    assert updated.title == "Greeting"
    assert "Hello world." in llm.calls[1]["system"]
    assert llm.calls[1]["messages"][0]["content"] == "Make it grander"


@pytest.mark.asyncio
async def test_widget_streams_widget_updates(db_session, user_id):
    llm = FakeLLM(steps=[[TextDelta("<div>clock</div> "), StepFinish("stop")]])
    registry = DocumentRegistry(db_session, llm)
    stream = DataStream()

    await registry.create_document(
        document_id=uuid.uuid4(), title="Clock", kind="widget", user_id=user_id, stream=stream
    )

    events = _data_events(await _drain(stream))
    assert events and all(kind == "widget-update" for kind, _ in events)


@pytest.mark.asyncio
async def test_image_document_is_not_indexed(db_session, user_id):
    llm = FakeLLM(image="cGl4ZWxz")
    registry = DocumentRegistry(db_session, llm)
    stream = DataStream()

    document = await registry.create_document(
        document_id=uuid.uuid4(), title="A red fox", kind="image", user_id=user_id, stream=stream
    )

    assert document.content == "cGl4ZWxz"
    assert llm.images == ["A red fox"]
    assert _data_events(await _drain(stream)) == [(DataType.CONTENT_UPDATE.value, "cGl4ZWxz")]
    assert await registry.retrieval.store.list_recent() == []
