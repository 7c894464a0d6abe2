# =============================================================================
# Pipeline Error Taxonomy
# =============================================================================
#
#   PipelineError              a stage failed; transient by default
#   └── PermanentPipelineError retrying cannot help (unreadable file,
#                              no extractable text, unsupported type)
#
# Whether permanent errors still consume the retry ceiling is a policy
# switch: settings.queue_retry_permanent_failures.
# Best-effort steps (superseded-artifact deletion, profile analysis) never
# raise these: they log and continue.
# =============================================================================


class PipelineError(Exception):
    """A document pipeline stage failed."""


class PermanentPipelineError(PipelineError):
    """A stage failed in a way that a redelivery cannot fix."""
