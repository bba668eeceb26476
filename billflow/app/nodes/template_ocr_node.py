"""
TEMPLATE_OCR Node - Track A recognition against known vendor layouts
"""
import io
from typing import Any, Dict, Optional

from PIL import Image

from billflow.app.nodes.base_node import BaseStageNode
from billflow.core.models.database import Document
from billflow.core.models.extraction import ExtractionPayload, build_details
from billflow.core.models.state import ErrorCode, ProcessingStage, Track
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class TemplateOcrNode(BaseStageNode):
    """
    TEMPLATE_OCR node: try the vendor templates on the track A image

    A confident match writes the fields and jumps straight to VALIDATE.
    Anything else (no matcher, no match, or a failure) falls through to
    GENERAL_OCR; failures are recorded but never stop the run.
    """

    stage = ProcessingStage.TEMPLATE_OCR
    failure_code = ErrorCode.TEMPLATE_OCR_FAILED

    def execute(self, document: Document) -> Dict[str, Any]:
        matcher = self.context.template_matcher
        if matcher is None:
            logger.info("No template matcher configured - routing to GENERAL_OCR")
            return {'stage': ProcessingStage.GENERAL_OCR}

        image = Image.open(io.BytesIO(self.context.artifacts.get(document.track_a_path)))
        match = matcher.match_template(image)
        if match is None:
            logger.info("No confident template match - routing to GENERAL_OCR")
            return {'stage': ProcessingStage.GENERAL_OCR}

        payload = ExtractionPayload.load(document.extracted_json)
        payload.track = Track.TEMPLATE
        payload.template_id = match.template_id
        payload.match_score = match.match_score
        payload.fields = match.fields
        payload.details = build_details(match.fields.bill_type) if match.fields.bill_type else None

        logger.info(f"Template {match.template_id} matched - routing to VALIDATE")
        return {
            'stage': ProcessingStage.VALIDATE,
            'track': Track.TEMPLATE,
            'template_id': match.template_id,
            'extracted_json': payload.dump(),
            **match.fields.column_values(),
        }

    def on_failure(self, document: Document, error: Exception, error_info: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.non_fatal(ProcessingStage.GENERAL_OCR, error_info)
