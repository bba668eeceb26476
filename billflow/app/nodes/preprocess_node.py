"""
PREPROCESS Node - Orient, crop and enhance the uploaded bill
"""
from typing import Any, Dict

from billflow.app.nodes.base_node import BaseStageNode
from billflow.core.models.database import Document
from billflow.core.models.extraction import ExtractionPayload, PreprocessNote
from billflow.core.models.state import DOCUMENT_FIELDS, ArtifactKind, ErrorCode, ProcessingStage
from billflow.core.utils.helpers import artifact_path
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class PreprocessNode(BaseStageNode):
    """
    PREPROCESS node: produce the scan, track A and track B renditions

    Responsibilities:
    - Read the original upload
    - Run the image preprocessor (EXIF orientation, first PDF page, outline warp)
    - Overwrite scan.png / track_a.png / track_b.png
    - Start a fresh extraction payload for this run

    Failures inside the preprocessor are non-fatal: the original bytes are
    stored as all three renditions and the run continues.
    """

    stage = ProcessingStage.PREPROCESS
    failure_code = ErrorCode.PREPROCESS_FAILED

    def execute(self, document: Document) -> Dict[str, Any]:
        artifacts = self.context.artifacts
        original = artifacts.get(document.original_path)

        updates: Dict[str, Any] = {
            'stage': ProcessingStage.TEMPLATE_OCR,
            'track': None,
            'template_id': None,
            'raw_text': None,
            **{name: None for name in DOCUMENT_FIELDS},
        }
        try:
            result = self.context.preprocessor.process(original, document.content_type)
            renditions = {
                ArtifactKind.SCAN: result.scan_png,
                ArtifactKind.TRACK_A: result.track_a_png,
                ArtifactKind.TRACK_B: result.track_b_png,
            }
            note = PreprocessNote(doc_detected=result.doc_detected, note=result.note)
            if not result.doc_detected:
                updates['last_error_code'] = ErrorCode.DOC_DETECT_FAILED
                updates['last_error_message'] = result.note
        except Exception as e:
            error_info = self.context.error_handler.handle_error(e, node=self.name, document_id=document.id)
            logger.warning(f"Preprocessing failed for {document.id}; using original bytes")
            renditions = {kind: original for kind in (ArtifactKind.SCAN, ArtifactKind.TRACK_A, ArtifactKind.TRACK_B)}
            note = PreprocessNote(doc_detected=False, note=error_info['message'])
            updates['last_error_code'] = ErrorCode.PREPROCESS_FAILED
            updates['last_error_message'] = error_info['message']

        columns = {
            ArtifactKind.SCAN: 'scan_path',
            ArtifactKind.TRACK_A: 'track_a_path',
            ArtifactKind.TRACK_B: 'track_b_path',
        }
        for kind, data in renditions.items():
            path = artifact_path(document.owner_id, document.id, kind)
            artifacts.put(path, data)
            updates[columns[kind]] = path

        updates['extracted_json'] = ExtractionPayload(preprocess=note).dump()
        return updates
