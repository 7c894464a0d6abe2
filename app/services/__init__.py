# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers and tasks:
#   - job_store.py: guarded state transitions for upload jobs
#   - supersede.py / submissions.py: the accept path for new uploads
#   - user_documents.py: the per-user "current CV" record
#   - pipeline.py: DocumentPipeline protocol and its default adapter
#   - parser.py: PDF/DOCX parsing with Docling
#   - chunker.py: token-based text chunking
#   - embedder.py: batch embedding generation
#   - vectorstore.py: pluggable artifact store (pgvector, Chroma)
#   - llm.py / profile_analysis.py: LLM providers and CV analysis
# =============================================================================
