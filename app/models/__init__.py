# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Response schemas for the API and the structured profile analysis.
# These are SEPARATE from the database models (app/db/models.py): the raw
# upload payload and retry bookkeeping columns never reach a client.
# =============================================================================
