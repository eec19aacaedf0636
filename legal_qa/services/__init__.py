# =============================================================================
# Services Package
# =============================================================================
# External-facing collaborators and pure engines used by the agents:
#
#   similarity.py     — cosine math, nearest neighbours, clustering, centroid
#   embedder.py       — text → vector (OpenAI-compatible embeddings)
#   llm.py            — completion providers (OpenAI-compatible, Anthropic)
#   tagger.py         — keyword auto-tagging of legal topics
#   automation.py     — best-effort webhook fan-out (n8n)
#   notifier.py       — realtime events over Redis pub/sub
#   ingestion.py      — Docling text extraction, Whisper transcription
#   response_index.py — read paths over stored answer embeddings
# =============================================================================
