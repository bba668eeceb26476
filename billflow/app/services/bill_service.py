"""
Utility bill service facade

The operations the API (or any other caller) uses. Identity arrives
already verified as caller_id / owner_id.
"""
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from billflow.app.services.confirmation import ConfirmationNormalizer
from billflow.app.workflow.sweeper import RecoverySweeper, SweepReport
from billflow.app.workflow.trigger import TriggerController
from billflow.core.models.database import Document
from billflow.core.models.document_store import DocumentStore
from billflow.core.models.state import ArtifactKind
from billflow.core.utils.error_handler import InvalidUploadError
from billflow.core.utils.helpers import artifact_path, generate_document_id, sanitize_filename
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

ALLOWED_EXTENSIONS = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.webp': 'image/webp',
    '.tiff': 'image/tiff',
    '.tif': 'image/tiff',
    '.bmp': 'image/bmp',
    '.pdf': 'application/pdf',
}
ALLOWED_CONTENT_TYPES = set(ALLOWED_EXTENSIONS.values())


def resolve_content_type(file_name: Optional[str], content_type: Optional[str]) -> str:
    """
    Accept an upload by MIME type or file extension

    Raises:
        InvalidUploadError: If neither names a supported format
    """
    if content_type:
        content_type = content_type.split(';')[0].strip().lower()
        if content_type == 'image/jpg':
            content_type = 'image/jpeg'
        if content_type in ALLOWED_CONTENT_TYPES:
            return content_type
    extension = Path(file_name or '').suffix.lower()
    if extension in ALLOWED_EXTENSIONS:
        return ALLOWED_EXTENSIONS[extension]
    raise InvalidUploadError(
        f"Unsupported file type {content_type or extension or 'unknown'}; "
        f"allowed: png, jpg, jpeg, webp, tiff, bmp, pdf"
    )


class UtilityBillService:
    """Create, inspect and steer utility bill documents"""

    def __init__(
        self,
        store: DocumentStore,
        artifacts,
        trigger: TriggerController,
        sweeper: RecoverySweeper,
        confirmation: Optional[ConfirmationNormalizer] = None,
        signed_url_ttl: int = 3600
    ):
        self.store = store
        self.artifacts = artifacts
        self.trigger = trigger
        self.sweeper = sweeper
        self.confirmation = confirmation or ConfirmationNormalizer(store)
        self.signed_url_ttl = signed_url_ttl

    def create(
        self,
        owner_id: str,
        file_bytes: bytes,
        file_name: Optional[str],
        content_type: Optional[str],
        site_id: Optional[str] = None
    ) -> Document:
        """
        Store an upload, create its document and start processing

        Raises:
            InvalidUploadError: If the file is empty or of an unsupported type
        """
        if not file_bytes:
            raise InvalidUploadError("Uploaded file is empty")
        resolved_type = resolve_content_type(file_name, content_type)

        document_id = generate_document_id()
        original_path = artifact_path(owner_id, document_id, ArtifactKind.ORIGINAL)
        self.artifacts.put(original_path, file_bytes)

        document = self.store.create_document(
            owner_id=owner_id,
            document_id=document_id,
            file_name=sanitize_filename(file_name) if file_name else None,
            content_type=resolved_type,
            original_path=original_path,
            site_id=site_id,
        )
        self.trigger.start(document_id)
        return document

    def fetch(self, document_id: str, caller_id: str) -> Dict[str, Any]:
        """Document fields plus signed URLs for its artifacts"""
        document = self.store.get_owned(document_id, caller_id)
        data = document.to_dict()
        data['artifacts'] = {
            'original': self.artifacts.signed_url(document.original_path, self.signed_url_ttl),
            'scan': self.artifacts.signed_url(document.scan_path, self.signed_url_ttl),
            'track_a': self.artifacts.signed_url(document.track_a_path, self.signed_url_ttl),
            'track_b': self.artifacts.signed_url(document.track_b_path, self.signed_url_ttl),
        }
        return data

    def retry(self, document_id: str, caller_id: str) -> Document:
        return self.trigger.retry(document_id, caller_id)

    def confirm(self, document_id: str, caller_id: str, fields: Mapping[str, Any]) -> Document:
        return self.confirmation.confirm(document_id, caller_id, fields)

    def reject(self, document_id: str, caller_id: str) -> Document:
        return self.store.reject(document_id, caller_id)

    def sweep(self, limit: Optional[int] = None, target_id: Optional[str] = None) -> SweepReport:
        return self.sweeper.sweep(limit=limit, target_id=target_id)
