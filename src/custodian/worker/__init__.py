"""Custodian maintenance worker.

Runs the periodic maintenance passes of the engine:
- Expired session sweeps with secure wipe
- Retention cleanups in batches, with timeout and abort support

Usage:
    # Run as module
    python -m custodian.worker

    # Or via the installed script
    custodian-worker
"""

from custodian.worker.main import run

__all__ = ["run"]
