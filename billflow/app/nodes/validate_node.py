"""
VALIDATE Node - Score the extraction and route it
"""
from typing import Any, Dict, Optional

from billflow.app.nodes.base_node import BaseStageNode
from billflow.app.workflow.confidence import fields_from_row
from billflow.core.models.database import Document
from billflow.core.models.extraction import ExtractionPayload
from billflow.core.models.state import ConfirmationSource, DocumentStatus, ErrorCode, ProcessingStage, Track
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class ValidateNode(BaseStageNode):
    """
    VALIDATE node: apply the confidence validator to the stored fields

    Responsibilities:
    - Score the extraction for its track
    - Finish the run at DONE with CONFIRMED or NEEDS_REVIEW
    - Record LOW_CONFIDENCE / VALIDATION_FAILED with the reasons, or clear
      earlier diagnostics on auto-confirmation
    """

    stage = ProcessingStage.VALIDATE
    failure_code = ErrorCode.VALIDATION_FAILED

    def execute(self, document: Document) -> Dict[str, Any]:
        payload = ExtractionPayload.load(document.extracted_json)
        track: Optional[Track] = Track(document.track) if document.track else payload.track

        verdict = self.context.validator.validate(
            fields_from_row(document.to_dict()),
            track,
            match_score=payload.match_score,
            llm_confidence=payload.llm_confidence,
            ambiguities=payload.ambiguities,
            doc_detected=payload.preprocess.doc_detected,
            has_text=bool((document.raw_text or '').strip()),
        )

        updates: Dict[str, Any] = {
            'stage': ProcessingStage.DONE,
            'status': verdict.status,
            'confidence': verdict.confidence,
        }
        if verdict.status == DocumentStatus.CONFIRMED:
            updates['confirmation_source'] = ConfirmationSource.AUTO
            updates['last_error_code'] = None
            updates['last_error_message'] = None
            logger.info(f"Auto-confirmed {document.id} with confidence {verdict.confidence:.2f}")
        else:
            updates['last_error_code'] = verdict.error_code
            updates['last_error_message'] = verdict.message
            logger.warning(f"{document.id} needs review: {verdict.message}")
        return updates
