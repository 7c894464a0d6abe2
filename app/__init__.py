# =============================================================================
# CV Ingestion Service
# =============================================================================
# Accepts CV uploads over HTTP, records each one as a durable job, and
# processes it in the background: text extraction, chunking, embedding,
# artifact storage and an optional LLM profile analysis.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (upload, status, listing)
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 response and analysis schemas
#   ├── services/     → Job store, supersede, submissions, document pipeline
#   │                    (parsing, chunking, embedding, artifact store, LLM)
#   └── workers/      → Celery app, dispatch helper, and task definitions
# =============================================================================
