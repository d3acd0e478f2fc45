"""Quart application exposing ingestion, knowledge-base management and chat."""
import asyncio
import json
import os
import tempfile
from typing import Optional

import structlog
from pydantic import ValidationError
from quart import Quart, Response, jsonify, request

from ragdesk import config
from ragdesk.logging_setup import configure_logging
from ragdesk.rag.models import IngestionRequest, InvalidInputError, normalize_labels
from ragdesk.schemas import ChatBody, CreateRagBody, IngestBody
from ragdesk.services import Services, build_services

logger = structlog.get_logger()


def _error_response(error: Exception, event: str):
    """Map an exception to a JSON error response.

    Request validation errors are 400, missing sources 404, anything else
    (backend, parsing or internal failures) 500.
    """
    if isinstance(error, ValidationError):
        return jsonify({"error": "Invalid request", "details": error.errors()}), 400
    if isinstance(error, InvalidInputError):
        return jsonify({"error": str(error)}), 400
    if isinstance(error, FileNotFoundError):
        return jsonify({"error": str(error)}), 404

    logger.error(event, error=str(error), error_type=type(error).__name__)
    return jsonify({"error": "An error occurred processing your request."}), 500


def _wants_event_stream() -> bool:
    return "text/event-stream" in request.headers.get("Accept", "").lower()


def _sse(payload: dict, event: Optional[str] = None) -> bytes:
    data = json.dumps(payload, ensure_ascii=False)
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {data}\n\n".encode("utf-8")


def create_app(services: Optional[Services] = None) -> Quart:
    """Create the Quart app around the given (or default) services."""
    app = Quart(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES
    services = services or build_services()
    app.extensions["ragdesk"] = services

    @app.route("/api/rags", methods=["GET"])
    async def list_rags():
        """List knowledge bases with their chunk counts.

        Returns JSON:
        [{"id": "kb-id", "chunks": 42}, ...]
        """
        try:
            counts = await services.vector_store.list_knowledge_bases()
            summaries = [
                {"id": rag_id, "chunks": count}
                for rag_id, count in sorted(counts.items(), key=lambda item: item[0].lower())
            ]
            return jsonify(summaries)
        except Exception as e:
            return _error_response(e, "rags_list_error")

    @app.route("/api/rags", methods=["POST"])
    async def create_rag():
        """Reserve a knowledge-base id.

        Knowledge bases exist implicitly through their chunks, so nothing is
        stored; the call only checks the id is free.
        """
        try:
            data = await request.get_json(force=True, silent=True) or {}
            body = CreateRagBody.model_validate(data)
            rag_id = body.id.strip()
            if not rag_id:
                raise InvalidInputError("Id is required.")

            existing = await services.vector_store.list_knowledge_bases()
            if rag_id in existing:
                return jsonify({"error": "Knowledge base already exists."}), 409

            tags = normalize_labels(body.tags)
            return jsonify({"id": rag_id, "tags": tags}), 201, {"Location": f"/api/rags/{rag_id}"}
        except Exception as e:
            return _error_response(e, "rag_create_error")

    @app.route("/api/rags/<rag_id>", methods=["DELETE"])
    async def delete_rag(rag_id: str):
        try:
            await services.vector_store.delete_knowledge_base(rag_id)
            return "", 204
        except Exception as e:
            return _error_response(e, "rag_delete_error")

    @app.route("/api/ingest", methods=["POST"])
    async def ingest():
        """Ingest a server-side path (JSON) or an uploaded zip archive (multipart).

        JSON body:
        {"rag_id": "...", "path": "...", "chunk_size": 800, "chunk_overlap": 150, "tags": [...]}

        Multipart form fields: rag_id, tags (comma separated), and one file part.

        Returns JSON:
        {"files_processed": 3, "chunks_created": 17}
        """
        try:
            if request.content_type and request.content_type.startswith("multipart/form-data"):
                return await _ingest_upload()

            data = await request.get_json(force=True, silent=True) or {}
            body = IngestBody.model_validate(data)
            result = await services.ingestion.ingest(
                IngestionRequest(
                    knowledge_base=body.rag_id,
                    source_path=body.path,
                    chunk_size=body.chunk_size,
                    chunk_overlap=body.chunk_overlap,
                    tags=tuple(body.tags or ()),
                )
            )
            return jsonify(
                {
                    "files_processed": result.files_processed,
                    "chunks_created": result.chunks_created,
                }
            )
        except Exception as e:
            return _error_response(e, "ingest_endpoint_error")

    async def _ingest_upload():
        form = await request.form
        files = await request.files

        rag_id = form.get("rag_id", "").strip()
        if not rag_id:
            raise InvalidInputError("rag_id is required.")
        if not files:
            raise InvalidInputError("A zip archive is required.")

        upload = next(iter(files.values()))
        tags_raw = form.get("tags", "")
        tags = tuple(t.strip() for t in tags_raw.split(",") if t.strip())

        fd, temp_path = tempfile.mkstemp(prefix="rag-upload-", suffix=".zip")
        os.close(fd)
        try:
            await upload.save(temp_path)
            logger.info("ingest_upload_received", rag_id=rag_id, filename=upload.filename)

            result = await services.ingestion.ingest(
                IngestionRequest(knowledge_base=rag_id, source_path=temp_path, tags=tags)
            )
            return jsonify(
                {
                    "files_processed": result.files_processed,
                    "chunks_created": result.chunks_created,
                }
            )
        finally:
            os.remove(temp_path)

    @app.route("/api/chat", methods=["POST"])
    async def chat():
        """Answer a question from one or more knowledge bases.

        Expects JSON body:
        {"rag_ids": ["kb"], "query": "...", "top_k": 8, "temperature": 0.2}

        Returns JSON {"response": "...", "citations": [...]}, or with
        "Accept: text/event-stream" a stream of token events followed by a
        "citations" event.
        """
        try:
            data = await request.get_json(force=True, silent=True) or {}
            body = ChatBody.model_validate(data)
            if not body.query.strip() or not body.rag_ids:
                raise InvalidInputError("rag_ids and query are required.")

            logger.info(
                "chat_request_received",
                rag_ids=body.rag_ids,
                query_length=len(body.query),
                stream=_wants_event_stream(),
            )

            if _wants_event_stream():
                stream = await services.chat.stream(
                    body.rag_ids, body.query, body.top_k, body.temperature
                )
                return _event_stream_response(stream)

            answer = await services.chat.answer(
                body.rag_ids, body.query, body.top_k, body.temperature
            )
            return jsonify(
                {
                    "response": answer.response,
                    "citations": [c.to_dict() for c in answer.citations],
                }
            )
        except Exception as e:
            return _error_response(e, "chat_endpoint_error")

    def _event_stream_response(stream) -> Response:
        async def events():
            try:
                async for token in stream:
                    yield _sse({"token": token})
            except asyncio.CancelledError:
                logger.info("chat_stream_cancelled")
                raise
            finally:
                await stream.aclose()

            yield _sse(
                {"citations": [c.to_dict() for c in stream.citations]},
                event="citations",
            )

        response = Response(events(), mimetype="text/event-stream")
        response.headers["Cache-Control"] = "no-cache"
        response.headers["X-Accel-Buffering"] = "no"
        response.timeout = None
        return response

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - Ollama is reachable and the chat model is installed."""
        checks = {
            "status": "healthy",
            "ollama": False,
            "models": False,
        }

        try:
            models = await services.client.list_models()
            checks["ollama"] = True

            if config.CHAT_MODEL in models:
                checks["models"] = True
            else:
                checks["status"] = "unhealthy"
                checks["error"] = f"Missing chat model: {config.CHAT_MODEL}"

            status_code = 200 if checks["status"] == "healthy" else 503
            return jsonify(checks), status_code

        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            checks["status"] = "unhealthy"
            checks["error"] = str(e)
            return jsonify(checks), 503

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": "Not found"}), 404

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn ragdesk.main:app in production
    app.run(host="0.0.0.0", port=5000, debug=True)
