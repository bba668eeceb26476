"""
Document record store

Every state transition is a single conditional UPDATE so that concurrent
runs, retries and rejects resolve at the row instead of in memory.
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import uuid

from sqlalchemy import or_, select, update

from billflow.core.models.database import AuditLog, Database, Document
from billflow.core.models.state import DOCUMENT_FIELDS, DocumentStatus, ProcessingStage, ErrorCode, stage_index
from billflow.core.utils.error_handler import (
    DocumentNotFoundError,
    InvalidTransitionError,
    OwnershipError,
)
from billflow.core.utils.helpers import truncate_text, utcnow
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500

# Columns a pipeline stage is allowed to write
STAGE_WRITABLE_COLUMNS = frozenset({
    'stage', 'status', 'confidence', 'track', 'template_id',
    'vendor_name', 'bill_type', 'amount_due', 'due_date',
    'billing_period_start', 'billing_period_end', 'customer_no', 'payment_account',
    'last_error_code', 'last_error_message',
    'scan_path', 'track_a_path', 'track_b_path',
    'raw_text', 'extracted_json', 'confirmation_source',
})


class DocumentStore:
    """Data access and guarded transitions for utility bill documents"""

    def __init__(self, database: Database, clock: Callable[[], datetime] = utcnow):
        self.database = database
        self.clock = clock

    @contextmanager
    def _session(self):
        session = self.database.session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _lease_is_free(self, now: datetime):
        return or_(
            Document.lease_token.is_(None),
            Document.lease_expires_at.is_(None),
            Document.lease_expires_at < now,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def create_document(
        self,
        owner_id: str,
        document_id: str,
        file_name: Optional[str],
        content_type: Optional[str],
        original_path: str,
        site_id: Optional[str] = None
    ) -> Document:
        """Insert a freshly uploaded document at IN_PROGRESS / PREPROCESS"""
        now = self.clock()
        document = Document(
            id=document_id,
            owner_id=owner_id,
            site_id=site_id,
            file_name=file_name,
            content_type=content_type,
            original_path=original_path,
            status=DocumentStatus.IN_PROGRESS.value,
            stage=ProcessingStage.PREPROCESS.value,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            session.add(document)
        logger.info(f"Created utility bill {document_id} for owner {owner_id}")
        return document

    def get(self, document_id: str) -> Document:
        """
        Load a document by id

        Raises:
            DocumentNotFoundError: If no such document exists
        """
        with self._session() as session:
            document = session.get(Document, document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def get_owned(self, document_id: str, caller_id: str) -> Document:
        """
        Load a document and verify the caller owns it

        Raises:
            DocumentNotFoundError: If no such document exists
            OwnershipError: If caller_id is not the owner
        """
        document = self.get(document_id)
        if document.owner_id != caller_id:
            raise OwnershipError(document_id, caller_id)
        return document

    def list_stalled(self, limit: int) -> List[str]:
        """Ids of IN_PROGRESS documents with no live lease, oldest first"""
        now = self.clock()
        query = (
            select(Document.id)
            .where(
                Document.status == DocumentStatus.IN_PROGRESS.value,
                self._lease_is_free(now),
            )
            .order_by(Document.created_at.asc(), Document.id.asc())
            .limit(limit)
        )
        with self._session() as session:
            return list(session.execute(query).scalars())

    def list_audit(self, document_id: str) -> List[AuditLog]:
        query = (
            select(AuditLog)
            .where(AuditLog.document_id == document_id)
            .order_by(AuditLog.id.asc())
        )
        with self._session() as session:
            return list(session.execute(query).scalars())

    # ------------------------------------------------------------------
    # Execution lease
    # ------------------------------------------------------------------

    def claim(self, document_id: str, ttl_seconds: float) -> Optional[str]:
        """
        Take the execution lease on an IN_PROGRESS document

        Args:
            document_id: Document to claim
            ttl_seconds: Lease lifetime

        Returns:
            Lease token, or None when the document is not IN_PROGRESS
            or another live lease holds it
        """
        now = self.clock()
        token = uuid.uuid4().hex
        statement = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.IN_PROGRESS.value,
                self._lease_is_free(now),
            )
            .values(lease_token=token, lease_expires_at=now + timedelta(seconds=ttl_seconds))
        )
        with self._session() as session:
            claimed = session.execute(statement).rowcount == 1
        if not claimed:
            logger.info(f"Could not claim {document_id}: not in progress or lease held")
            return None
        return token

    def release(self, document_id: str, token: str) -> bool:
        """Drop the lease if it is still ours"""
        statement = (
            update(Document)
            .where(Document.id == document_id, Document.lease_token == token)
            .values(lease_token=None, lease_expires_at=None)
        )
        with self._session() as session:
            return session.execute(statement).rowcount == 1

    # ------------------------------------------------------------------
    # Pipeline transitions
    # ------------------------------------------------------------------

    def commit_stage(
        self,
        document_id: str,
        token: str,
        expected_stage: ProcessingStage,
        updates: Dict[str, Any]
    ) -> bool:
        """
        Apply one stage's results, guarded by status, stage and lease

        Args:
            document_id: Document being processed
            token: Lease token held by the run
            expected_stage: Stage the run believes the document is at
            updates: Column values to write

        Returns:
            True if the row was updated; False if the guard was lost
            (retry, reject or another run moved the document)

        Raises:
            InvalidTransitionError: If updates would move the stage backwards
                or write a column stages do not own
        """
        unknown = set(updates) - STAGE_WRITABLE_COLUMNS
        if unknown:
            raise InvalidTransitionError(f"Stage commit cannot write {sorted(unknown)}")

        values = {
            key: value.value if isinstance(value, Enum) else value
            for key, value in updates.items()
        }
        if 'stage' in values:
            next_stage = ProcessingStage(values['stage'])
            if stage_index(next_stage) < stage_index(expected_stage):
                raise InvalidTransitionError(
                    f"Stage cannot move from {ProcessingStage(expected_stage).value} back to {next_stage.value}"
                )
            values['stage'] = next_stage.value
        if 'status' in values:
            values['status'] = DocumentStatus(values['status']).value
        if values.get('last_error_message'):
            values['last_error_message'] = truncate_text(values['last_error_message'], MAX_ERROR_MESSAGE_LENGTH)

        statement = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.IN_PROGRESS.value,
                Document.stage == ProcessingStage(expected_stage).value,
                Document.lease_token == token,
            )
            .values(**values)
        )
        with self._session() as session:
            committed = session.execute(statement).rowcount == 1
        if not committed:
            logger.warning(f"Lost guard on {document_id} at {ProcessingStage(expected_stage).value}; halting run")
        return committed

    def mark_failed(self, document_id: str, token: str, code: ErrorCode, message: str) -> bool:
        """Send an in-flight document to NEEDS_REVIEW with a diagnostic, freezing its stage"""
        statement = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.IN_PROGRESS.value,
                Document.lease_token == token,
            )
            .values(
                status=DocumentStatus.NEEDS_REVIEW.value,
                last_error_code=ErrorCode(code).value,
                last_error_message=truncate_text(message or '', MAX_ERROR_MESSAGE_LENGTH),
            )
        )
        with self._session() as session:
            return session.execute(statement).rowcount == 1

    # ------------------------------------------------------------------
    # Caller-driven transitions
    # ------------------------------------------------------------------

    def reset_for_retry(self, document_id: str, caller_id: str) -> Document:
        """
        Reset a document to IN_PROGRESS / PREPROCESS

        Clears diagnostics, confidence, extracted fields and lease in the
        same UPDATE so a run still in flight loses its guard and no value
        from an earlier run survives into review. Resetting twice yields the
        same state.

        Raises:
            OwnershipError: If caller_id is not the owner
            InvalidTransitionError: If the document is CONFIRMED
        """
        self.get_owned(document_id, caller_id)
        statement = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status != DocumentStatus.CONFIRMED.value,
            )
            .values(
                status=DocumentStatus.IN_PROGRESS.value,
                stage=ProcessingStage.PREPROCESS.value,
                last_error_code=None,
                last_error_message=None,
                confidence=None,
                lease_token=None,
                lease_expires_at=None,
                confirmation_source=None,
                reviewed_by=None,
                track=None,
                template_id=None,
                raw_text=None,
                extracted_json=None,
                **{name: None for name in DOCUMENT_FIELDS},
            )
        )
        with self._session() as session:
            reset = session.execute(statement).rowcount == 1
        if not reset:
            raise InvalidTransitionError(f"Utility bill {document_id} is CONFIRMED and cannot be retried")
        logger.info(f"Reset {document_id} for retry by {caller_id}")
        return self.get(document_id)

    def apply_confirmation(
        self,
        document_id: str,
        expected_status: DocumentStatus,
        values: Dict[str, Any]
    ) -> Document:
        """
        Write a human confirmation, guarded on the status it was computed from

        Raises:
            InvalidTransitionError: If the status changed in between
        """
        statement = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus(expected_status).value,
            )
            .values(**values)
        )
        with self._session() as session:
            applied = session.execute(statement).rowcount == 1
        if not applied:
            raise InvalidTransitionError(f"Utility bill {document_id} changed while being confirmed")
        return self.get(document_id)

    def reject(self, document_id: str, caller_id: str) -> Document:
        """
        Mark a document REJECTED and drop its lease

        Raises:
            OwnershipError: If caller_id is not the owner
        """
        self.get_owned(document_id, caller_id)
        statement = (
            update(Document)
            .where(Document.id == document_id)
            .values(
                status=DocumentStatus.REJECTED.value,
                lease_token=None,
                lease_expires_at=None,
                reviewed_by=caller_id,
            )
        )
        with self._session() as session:
            session.execute(statement)
        logger.info(f"Utility bill {document_id} rejected by {caller_id}")
        return self.get(document_id)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def record_audit(
        self,
        document_id: str,
        node_name: str,
        action: str,
        result: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Write an audit row; failures are logged and never interrupt processing"""
        session = self.database.session()
        try:
            session.add(AuditLog(
                document_id=document_id,
                node_name=node_name,
                action=action,
                result=result,
                details=details or {},
                timestamp=self.clock(),
            ))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to log audit entry: {e}")
        finally:
            session.close()
