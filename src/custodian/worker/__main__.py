"""Allow running the worker with ``python -m custodian.worker``."""

from custodian.worker.main import run

run()
