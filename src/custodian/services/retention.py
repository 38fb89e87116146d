"""Retention policies and the catalog of governed records.

Every governed artifact is registered against a retention policy; its
expiry is fixed at registration as ``registered_at + retention_period``.
The catalog answers "what has expired" and "what expires soon", archives
records before deletion where the policy asks for it, and purges records
through the secure-wipe path.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from custodian.core.clock import utcnow
from custodian.db.models.base import AuditStream, RecordSensitivity
from custodian.services.audit_log import AuditEventType
from custodian.services.secure_wipe import secure_wipe
from custodian.services.types import RetentionPolicy, RetentionRecord

if TYPE_CHECKING:
    from custodian.core.clock import Clock
    from custodian.services.audit_log import AuditLogService
    from custodian.services.store import EngineStore

logger = logging.getLogger(__name__)

_CONTENT_HASH_RE = re.compile(r"^[0-9a-f]{64}$")

# Records of this type are keyed by the id of the analysis session they back
SESSION_DATA_TYPE = "session_data"

# Fields a secure purge leaves intact: the key and the policy reference
RECORD_KEY_FIELDS = ("data_id", "policy_id")

DEFAULT_POLICIES: tuple[RetentionPolicy, ...] = (
    RetentionPolicy(
        policy_id="analysis-results",
        name="Analysis Results",
        data_type="analysis_result",
        retention_period=timedelta(days=90),
        auto_cleanup=True,
        secure_delete=True,
        archive_before_delete=True,
        notification_threshold=timedelta(days=7),
        description="Generated analysis results and reports",
    ),
    RetentionPolicy(
        policy_id="session-data",
        name="Session Data",
        data_type=SESSION_DATA_TYPE,
        retention_period=timedelta(days=30),
        auto_cleanup=True,
        secure_delete=True,
        archive_before_delete=False,
        notification_threshold=timedelta(days=3),
        description="Uploaded documents and working state of analysis sessions",
    ),
    RetentionPolicy(
        policy_id="audit-logs",
        name="Audit Logs",
        data_type="audit_log",
        retention_period=timedelta(days=2555),
        auto_cleanup=False,
        secure_delete=True,
        archive_before_delete=True,
        notification_threshold=timedelta(days=30),
        description="Audit trail exports, kept for seven years",
    ),
    RetentionPolicy(
        policy_id="quota-records",
        name="Quota Records",
        data_type="quota_record",
        retention_period=timedelta(days=365),
        auto_cleanup=True,
        secure_delete=True,
        archive_before_delete=True,
        notification_threshold=timedelta(days=14),
        description="Daily usage counters",
    ),
    RetentionPolicy(
        policy_id="user-preferences",
        name="User Preferences",
        data_type="user_preferences",
        retention_period=timedelta(days=1095),
        auto_cleanup=False,
        secure_delete=True,
        archive_before_delete=True,
        notification_threshold=timedelta(days=30),
        description="Per-user settings",
    ),
)


class RetentionError(Exception):
    """Base exception for retention errors."""

    pass


class PolicyNotFoundError(RetentionError):
    """Raised when a record refers to an unknown retention policy."""

    def __init__(self, policy_id: str) -> None:
        self.policy_id = policy_id
        super().__init__(f"Retention policy not found: {policy_id}")


class InvalidPolicyError(RetentionError):
    """Raised when a policy definition is rejected."""

    pass


@dataclass(frozen=True)
class ArchiveEntry:
    """Archive metadata written before a record is deleted."""

    data_id: str
    data_type: str
    content_hash: str
    original_expires_at: datetime
    archived_at: datetime
    archive_hash: str
    archive_ref: str


@dataclass(frozen=True)
class RetentionStats:
    """Catalog-wide counts."""

    total_records: int
    archived_records: int
    by_policy: dict[str, int]
    by_data_type: dict[str, int]
    expired_records: int
    expiring_records: int


def canonical_hash(data: dict[str, Any]) -> str:
    """Return the SHA-256 of the canonical JSON rendering of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class RetentionCatalog:
    """Registry of retention policies and governed records.

    Example:
        catalog = RetentionCatalog(store, audit)
        await catalog.install_default_policies()
        record = await catalog.register(
            "doc-1", "analysis_result", sha256_hex, "analysis-results"
        )
        expired = await catalog.find_expired()
    """

    def __init__(
        self,
        store: EngineStore,
        audit: AuditLogService,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def install_default_policies(self, *, overwrite: bool = False) -> list[str]:
        """Store the built-in policies.

        Args:
            overwrite: Replace policies that already exist with the same id.

        Returns:
            Ids of the policies that were written.
        """
        installed: list[str] = []
        for policy in DEFAULT_POLICIES:
            if not overwrite and await self._store.get_policy(policy.policy_id) is not None:
                continue
            await self._store.put_policy(policy)
            installed.append(policy.policy_id)
        if installed:
            logger.info("Installed default retention policies: %s", ", ".join(installed))
        return installed

    async def set_policy(self, policy: RetentionPolicy, *, actor_id: str | None = None) -> None:
        """Create or replace a retention policy.

        Records already registered keep the expiry computed at registration.

        Raises:
            InvalidPolicyError: If the retention period is not positive.
        """
        if policy.retention_period <= timedelta(0):
            msg = f"Retention period must be positive for policy {policy.policy_id}"
            raise InvalidPolicyError(msg)
        if policy.notification_threshold < timedelta(0):
            msg = f"Notification threshold must not be negative for policy {policy.policy_id}"
            raise InvalidPolicyError(msg)

        await self._store.put_policy(policy)
        summary = {
            "policy_id": policy.policy_id,
            "data_type": policy.data_type,
            "retention_days": policy.retention_period.days,
            "auto_cleanup": policy.auto_cleanup,
            "secure_delete": policy.secure_delete,
            "archive_before_delete": policy.archive_before_delete,
        }
        await self._audit.append(
            stream=AuditStream.RETENTION,
            event_type=AuditEventType.POLICY_CHANGED,
            payload=summary,
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id,
            resource_type="policy",
            resource_id=policy.policy_id,
            summary=summary,
        )
        logger.info("Retention policy set: policy_id=%s", policy.policy_id)

    async def get_policy(self, policy_id: str) -> RetentionPolicy | None:
        return await self._store.get_policy(policy_id)

    async def list_policies(self, auto_cleanup: bool | None = None) -> list[RetentionPolicy]:
        """List policies, optionally only those with the given auto_cleanup flag."""
        policies = await self._store.list_policies()
        if auto_cleanup is None:
            return policies
        return [p for p in policies if p.auto_cleanup == auto_cleanup]

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def register(
        self,
        data_id: str,
        data_type: str,
        content_hash: str,
        policy_id: str,
        metadata: dict[str, Any] | None = None,
        security_level: RecordSensitivity = RecordSensitivity.MEDIUM,
    ) -> RetentionRecord:
        """Register a governed artifact under a retention policy.

        Registering an existing ``data_id`` again replaces the record and
        restarts its retention period.

        Args:
            data_id: Unique identifier of the artifact.
            data_type: Kind of artifact.
            content_hash: SHA-256 hex digest of the artifact content.
            policy_id: Policy that governs the artifact.
            metadata: Extra attributes kept with the record.
            security_level: Sensitivity of the artifact.

        Returns:
            The registered record.

        Raises:
            PolicyNotFoundError: If ``policy_id`` is unknown.
            ValueError: If ``content_hash`` is not a SHA-256 hex digest.
        """
        normalized_hash = content_hash.lower()
        if not _CONTENT_HASH_RE.match(normalized_hash):
            msg = f"content_hash must be a 64-character hex SHA-256 digest, got {content_hash!r}"
            raise ValueError(msg)

        policy = await self._store.get_policy(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)

        now = self._clock()
        record_metadata = dict(metadata or {})
        record_metadata["registration_hash"] = canonical_hash(
            {
                "data_id": data_id,
                "data_type": data_type,
                "content_hash": normalized_hash,
                "policy_id": policy_id,
                "registered_at": now.isoformat(),
            }
        )
        record = RetentionRecord(
            data_id=data_id,
            data_type=data_type,
            content_hash=normalized_hash,
            policy_id=policy_id,
            registered_at=now,
            expires_at=now + policy.retention_period,
            last_accessed_at=now,
            security_level=security_level,
            metadata=record_metadata,
        )
        await self._store.put_record(record)

        summary = {
            "data_type": data_type,
            "policy_id": policy_id,
            "expires_at": record.expires_at.isoformat(),
        }
        await self._audit.append(
            stream=AuditStream.RETENTION,
            event_type=AuditEventType.RECORD_REGISTERED,
            payload={"data_id": data_id, "content_hash": normalized_hash, **summary},
            actor_type="system",
            resource_type="record",
            resource_id=data_id,
            summary=summary,
        )
        logger.info(
            "Record registered: data_id=%s, policy_id=%s, expires_at=%s",
            data_id,
            policy_id,
            record.expires_at.isoformat(),
        )
        return record

    async def get_record(self, data_id: str) -> RetentionRecord | None:
        return await self._store.get_record(data_id)

    async def touch(self, data_id: str) -> bool:
        """Update the last access time of a record; expiry is unchanged."""
        record = await self._store.get_record(data_id)
        if record is None:
            return False
        record.last_accessed_at = self._clock()
        await self._store.put_record(record)
        return True

    async def find_expired(
        self,
        policy_id: str | None = None,
        data_type: str | None = None,
    ) -> list[RetentionRecord]:
        """Return records whose expiry has passed, oldest expiry first.

        Archived records are included: archiving happens before deletion,
        so an archived record still in the catalog is a deletion to retry.
        """
        return await self._store.query_records(
            expires_before=self._clock(),
            policy_id=policy_id,
            data_type=data_type,
        )

    async def find_expiring_soon(
        self,
        policy_id: str | None = None,
        data_type: str | None = None,
    ) -> list[RetentionRecord]:
        """Return records expiring within their policy's notification threshold."""
        now = self._clock()
        if policy_id is not None:
            policy = await self._store.get_policy(policy_id)
            if policy is None:
                raise PolicyNotFoundError(policy_id)
            policies = [policy]
        else:
            policies = await self._store.list_policies()

        expiring: list[RetentionRecord] = []
        for policy in policies:
            expiring.extend(
                await self._store.query_records(
                    expires_after=now,
                    expires_before=now + policy.notification_threshold,
                    policy_id=policy.policy_id,
                    data_type=data_type,
                    include_archived=False,
                )
            )
        expiring.sort(key=lambda r: (r.expires_at, r.data_id))
        return expiring

    async def archive(self, record: RetentionRecord) -> ArchiveEntry:
        """Mark a record archived and write its archive entry to the audit trail.

        Returns:
            The archive entry; it carries hashes and timestamps only.
        """
        now = self._clock()
        archive_hash = canonical_hash(
            {
                "data_id": record.data_id,
                "data_type": record.data_type,
                "content_hash": record.content_hash,
                "expires_at": record.expires_at.isoformat(),
                "archived_at": now.isoformat(),
            }
        )
        entry = ArchiveEntry(
            data_id=record.data_id,
            data_type=record.data_type,
            content_hash=record.content_hash,
            original_expires_at=record.expires_at,
            archived_at=now,
            archive_hash=archive_hash,
            archive_ref=f"archive:{record.data_id}:{archive_hash[:16]}",
        )

        record.is_archived = True
        record.archive_ref = entry.archive_ref
        record.metadata = {
            **record.metadata,
            "archive_hash": archive_hash,
            "archived_at": now.isoformat(),
        }
        await self._store.put_record(record)

        await self._audit.append(
            stream=AuditStream.RETENTION,
            event_type=AuditEventType.RECORD_ARCHIVED,
            payload={
                "data_id": entry.data_id,
                "data_type": entry.data_type,
                "content_hash": entry.content_hash,
                "original_expires_at": entry.original_expires_at.isoformat(),
                "archive_hash": entry.archive_hash,
            },
            actor_type="system",
            resource_type="record",
            resource_id=record.data_id,
            summary={"archive_ref": entry.archive_ref},
        )
        logger.info("Record archived: data_id=%s, ref=%s", record.data_id, entry.archive_ref)
        return entry

    async def purge(self, record: RetentionRecord, *, secure: bool) -> bool:
        """Remove a record from the catalog, overwriting it first when ``secure``.

        Returns:
            False if the record was already gone.
        """
        # Work on a copy so the caller's view keeps its values for reporting
        target = replace(record, metadata=dict(record.metadata))
        pattern_hash: str | None = None
        if secure:
            result = secure_wipe(target, keep=RECORD_KEY_FIELDS)
            pattern_hash = result.pattern_hash
            await self._store.put_record(target)

        deleted = await self._store.delete_record(record.data_id)
        if not deleted:
            return False

        summary: dict[str, Any] = {"secure": secure, "policy_id": record.policy_id}
        if pattern_hash is not None:
            summary["pattern_hash"] = pattern_hash
        await self._audit.append(
            stream=AuditStream.RETENTION,
            event_type=AuditEventType.RECORD_PURGED,
            payload={"data_id": record.data_id, **summary},
            actor_type="system",
            resource_type="record",
            resource_id=record.data_id,
            summary=summary,
        )
        logger.info("Record purged: data_id=%s, secure=%s", record.data_id, secure)
        return True

    async def stats(self) -> RetentionStats:
        """Return catalog-wide counts."""
        records = await self._store.query_records()
        now = self._clock()
        expiring = await self.find_expiring_soon()
        return RetentionStats(
            total_records=len(records),
            archived_records=sum(1 for r in records if r.is_archived),
            by_policy=dict(Counter(r.policy_id for r in records)),
            by_data_type=dict(Counter(r.data_type for r in records)),
            expired_records=sum(1 for r in records if r.expires_at <= now),
            expiring_records=len(expiring),
        )
