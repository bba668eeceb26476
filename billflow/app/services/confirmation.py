"""
Human confirmation of extracted bill fields

Reviewers send corrections in whatever shape the form produced. Values
are parsed leniently; anything that does not parse is dropped instead of
overwriting good data.
"""
from typing import Any, Dict, List, Mapping, Tuple

from billflow.app.workflow.confidence import required_field_issues
from billflow.core.models.database import Document
from billflow.core.models.document_store import DocumentStore
from billflow.core.models.state import ConfirmationSource, DocumentStatus, ErrorCode, DOCUMENT_FIELDS
from billflow.core.utils.error_handler import InvalidTransitionError
from billflow.core.utils.helpers import clean_text, parse_amount, parse_bill_type, parse_date
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

DATE_FIELDS = ('due_date', 'billing_period_start', 'billing_period_end')
IDENTIFIER_FIELDS = ('customer_no', 'payment_account')

CONFIRMABLE_STATUSES = (DocumentStatus.NEEDS_REVIEW.value, DocumentStatus.CONFIRMED.value)


def _normalize_field(name: str, value: Any) -> Any:
    if name == 'amount_due':
        amount = parse_amount(value)
        return amount if amount is not None and amount >= 0 else None
    if name == 'bill_type':
        bill_type = parse_bill_type(value)
        return bill_type.value if bill_type else None
    if name in DATE_FIELDS:
        return parse_date(value)
    if name in IDENTIFIER_FIELDS and isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return clean_text(value)


def build_confirmation_patch(fields: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """
    Parse reviewer input into column values

    Args:
        fields: Raw reviewer input; unknown keys and null values are ignored

    Returns:
        (patch of valid values, names of fields that were sent but dropped)
    """
    patch: Dict[str, Any] = {}
    dropped: List[str] = []
    for name in DOCUMENT_FIELDS:
        if name not in fields or fields[name] is None:
            continue
        value = _normalize_field(name, fields[name])
        if value is None:
            dropped.append(name)
        else:
            patch[name] = value
    return patch, dropped


class ConfirmationNormalizer:
    """Applies reviewer corrections and decides whether the bill is confirmed"""

    def __init__(self, store: DocumentStore):
        self.store = store

    def confirm(self, document_id: str, caller_id: str, fields: Mapping[str, Any]) -> Document:
        """
        Merge reviewer corrections into a document

        The patch is always applied. The document becomes CONFIRMED only when
        the merged record carries every required field; otherwise it stays in
        NEEDS_REVIEW with INCOMPLETE_CONFIRMATION naming what is missing.

        Raises:
            DocumentNotFoundError: If no such document exists
            OwnershipError: If caller_id is not the owner
            InvalidTransitionError: If the document is REJECTED or still IN_PROGRESS
        """
        document = self.store.get_owned(document_id, caller_id)
        if document.status not in CONFIRMABLE_STATUSES:
            raise InvalidTransitionError(
                f"Utility bill {document_id} is {document.status} and cannot be confirmed"
            )

        patch, dropped = build_confirmation_patch(fields or {})
        if dropped:
            logger.info(f"Dropped unparseable confirmation fields for {document_id}: {dropped}")

        merged = {name: getattr(document, name) for name in DOCUMENT_FIELDS}
        merged.update(patch)
        issues = required_field_issues(merged)

        values: Dict[str, Any] = dict(patch)
        values['reviewed_by'] = caller_id
        if not issues:
            values.update(
                status=DocumentStatus.CONFIRMED.value,
                confirmation_source=ConfirmationSource.HUMAN.value,
                last_error_code=None,
                last_error_message=None,
            )
            logger.info(f"Utility bill {document_id} confirmed by {caller_id}")
        else:
            values.update(
                status=DocumentStatus.NEEDS_REVIEW.value,
                confirmation_source=None,
                last_error_code=ErrorCode.INCOMPLETE_CONFIRMATION.value,
                last_error_message=f"Cannot confirm: {'; '.join(issues.values())}",
            )
            logger.warning(f"Confirmation of {document_id} incomplete: {sorted(issues)}")

        return self.store.apply_confirmation(document_id, DocumentStatus(document.status), values)
