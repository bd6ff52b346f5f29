"""Secret redaction for captured output, diagnostics and logs."""

from stage_orchestrator.security.redaction import (
    REDACTED_VALUE,
    SecretMasker,
    is_sensitive_key,
    redact_structure,
    redact_text,
)

__all__ = [
    "REDACTED_VALUE",
    "SecretMasker",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
