"""HTTP API tests using the Quart test client with in-memory services."""
import io
import json
import zipfile

import pytest
from werkzeug.datastructures import FileStorage

from ragdesk import config
from ragdesk.main import create_app
from ragdesk.rag.ingest import IngestPipeline
from ragdesk.rag.store_faiss import FAISSVectorStore


@pytest.fixture
def app(services):
    return create_app(services)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def populated(index, chunk_factory):
    for chunk in (
        chunk_factory("Refunds are issued within 30 days.", knowledge_base="policies", source="refunds.md"),
        chunk_factory("Shipping takes five days.", knowledge_base="policies", source="shipping.md", position=1),
        chunk_factory("Office opens at nine.", knowledge_base="faq", source="office.txt"),
    ):
        index.chunks[(chunk.knowledge_base, chunk.id)] = chunk
    return index


def _parse_sse(body: str):
    events = []
    for block in body.strip().split("\n\n"):
        event, data = None, None
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        events.append((event, data))
    return events


@pytest.mark.asyncio
async def test_list_rags_sorted_with_counts(client, populated):
    response = await client.get("/api/rags")

    assert response.status_code == 200
    assert await response.get_json() == [
        {"id": "faq", "chunks": 1},
        {"id": "policies", "chunks": 2},
    ]


@pytest.mark.asyncio
async def test_create_rag(client, populated):
    response = await client.post("/api/rags", json={"id": " manuals ", "tags": ["x", "X", ""]})

    assert response.status_code == 201
    assert response.headers["Location"] == "/api/rags/manuals"
    assert await response.get_json() == {"id": "manuals", "tags": ["x"]}


@pytest.mark.asyncio
async def test_create_rag_conflict_and_blank_id(client, populated):
    conflict = await client.post("/api/rags", json={"id": "policies"})
    blank = await client.post("/api/rags", json={"id": "  "})

    assert conflict.status_code == 409
    assert blank.status_code == 400


@pytest.mark.asyncio
async def test_delete_rag(client, populated):
    response = await client.delete("/api/rags/policies")

    assert response.status_code == 204
    assert await populated.list_knowledge_bases() == {"faq": 1}


@pytest.mark.asyncio
async def test_ingest_json_path(client, index, docs_dir):
    response = await client.post(
        "/api/ingest",
        json={"rag_id": "letters", "path": str(docs_dir), "tags": ["greek"]},
    )

    assert response.status_code == 200
    data = await response.get_json()
    assert data["files_processed"] == 2
    assert data["chunks_created"] == len(index.upserts[0])
    assert all(c.tags == ("greek",) for c in index.upserts[0])


@pytest.mark.asyncio
async def test_ingest_json_errors(client, tmp_path):
    missing = await client.post("/api/ingest", json={"rag_id": "kb", "path": str(tmp_path / "nope")})
    blank = await client.post("/api/ingest", json={"rag_id": "", "path": str(tmp_path)})
    invalid = await client.post("/api/ingest", json={"rag_id": "kb", "path": str(tmp_path), "chunk_size": 0})

    assert missing.status_code == 404
    assert blank.status_code == 400
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_ingest_uploaded_zip(client, index):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("notes/one.txt", "First note. It is short.")
        zf.writestr("two.md", "---\ntitle: Two\n---\nSecond note.")
    buffer.seek(0)

    response = await client.post(
        "/api/ingest",
        form={"rag_id": "uploads", "tags": "a, b,"},
        files={"file": FileStorage(stream=buffer, filename="notes.zip", content_type="application/zip")},
    )

    assert response.status_code == 200
    assert await response.get_json() == {"files_processed": 2, "chunks_created": 2}
    assert {c.source for c in index.upserts[0]} == {"notes/one.txt", "two.md"}
    assert all(c.tags == ("a", "b") for c in index.upserts[0])


@pytest.mark.asyncio
async def test_ingest_upload_requires_rag_id(client):
    response = await client.post(
        "/api/ingest",
        form={"rag_id": " "},
        files={"file": FileStorage(stream=io.BytesIO(b"PK"), filename="x.zip")},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_chat_json(client, populated, llm):
    response = await client.post(
        "/api/chat",
        json={"rag_ids": ["policies"], "query": "How long do refunds take?", "top_k": 1, "temperature": 0.0},
    )

    assert response.status_code == 200
    data = await response.get_json()
    assert data["response"] == "Grounded answer."
    assert len(data["citations"]) == 1
    assert set(data["citations"][0]) == {"rag_id", "source", "position", "score", "snippet"}
    assert data["citations"][0]["rag_id"] == "policies"
    assert llm.calls[0][1] == 0.0


@pytest.mark.asyncio
async def test_chat_event_stream(client, populated, llm):
    response = await client.post(
        "/api/chat",
        json={"rag_ids": ["policies", "faq"], "query": "When does the office open?"},
        headers={"Accept": "text/event-stream"},
    )

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    assert response.headers["Cache-Control"] == "no-cache"

    events = _parse_sse(await response.get_data(as_text=True))
    tokens = [data["token"] for event, data in events if event is None]
    citations = [data for event, data in events if event == "citations"]

    assert "".join(tokens) == "Grounded answer."
    assert events[-1][0] == "citations"
    assert len(citations) == 1
    assert len(citations[0]["citations"]) == 3
    assert llm.stream_closed


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"rag_ids": [], "query": "Question?"},
        {"rag_ids": ["kb"], "query": "  "},
        {"rag_ids": ["kb"], "query": "Question?", "top_k": 0},
        {"rag_ids": ["kb"], "query": "Question?", "temperature": 3},
    ],
)
async def test_chat_rejects_invalid_bodies(client, body):
    response = await client.post("/api/chat", json=body)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_chat_without_body_is_rejected(client):
    response = await client.post("/api/chat", data="not json")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_backend_failures_map_to_500(services):
    class FailingIndex:
        async def list_knowledge_bases(self):
            raise ConnectionError("disk gone")

    services.vector_store = FailingIndex()
    client = create_app(services).test_client()

    response = await client.get("/api/rags")
    assert response.status_code == 500
    assert "disk gone" not in (await response.get_data(as_text=True))


@pytest.mark.asyncio
async def test_health_endpoints(services):
    class ModelsClient:
        def __init__(self, models):
            self.models = models

        async def list_models(self):
            return self.models

    services.client = ModelsClient([config.CHAT_MODEL])
    healthy = await create_app(services).test_client().get("/health/ready")
    assert healthy.status_code == 200

    services.client = ModelsClient(["other-model"])
    missing = await create_app(services).test_client().get("/health/ready")
    assert missing.status_code == 503

    live = await create_app(services).test_client().get("/health/live")
    assert (await live.get_json()) == {"status": "alive"}


@pytest.mark.asyncio
async def test_unknown_route_returns_json_404(client):
    response = await client.get("/api/unknown")
    assert response.status_code == 404
    assert await response.get_json() == {"error": "Not found"}


@pytest.mark.asyncio
async def test_index_dimension_mismatch_is_a_server_error(services, embedder, docs_dir, tmp_path):
    store = FAISSVectorStore(index_path=tmp_path / "kb.faiss", db_path=tmp_path / "kb.sqlite")
    await store.ensure_collection(16)
    services.vector_store = store
    services.ingestion = IngestPipeline(embedder=embedder, vector_store=store)

    response = await create_app(services).test_client().post(
        "/api/ingest", json={"rag_id": "kb", "path": str(docs_dir)}
    )

    assert response.status_code == 500
    assert "Dimension mismatch" not in await response.get_data(as_text=True)


@pytest.mark.asyncio
async def test_unreadable_document_is_a_server_error(client, tmp_path):
    root = tmp_path / "bad"
    root.mkdir()
    (root / "bad.txt").write_bytes(b"\xff\xfe\xfa invalid utf-8")

    response = await client.post("/api/ingest", json={"rag_id": "kb", "path": str(root)})

    assert response.status_code == 500


@pytest.mark.asyncio
async def test_upload_that_is_not_a_zip_is_rejected(client, index):
    response = await client.post(
        "/api/ingest",
        form={"rag_id": "uploads"},
        files={"file": FileStorage(stream=io.BytesIO(b"plain text"), filename="notes.zip")},
    )

    assert response.status_code == 400
    assert "zip" in (await response.get_json())["error"]
    assert index.upserts == []
