# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Response schemas for budget status, transactions and diagnostics.
# These are SEPARATE from the database models (ai_gateway/db/models.py).
# =============================================================================
