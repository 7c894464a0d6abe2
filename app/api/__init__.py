# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - uploads.py: CV upload, job status, active jobs, current user document
#   - deps.py: request dependencies (caller identity)
# =============================================================================
