"""Custodian - lifecycle engine for time-bounded analysis records.

Governs how analysis sessions and retained artifacts are admitted,
extended, expired and irreversibly purged:

- Session expiration with security-level and classification ceilings
- Per-user daily quota with atomic check-and-reserve
- Retention catalog with per-data-type policies
- Batched, abortable cleanup with verifiable reports
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
