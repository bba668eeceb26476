"""
GENERAL_OCR Node - Track B full-page text recognition
"""
import io
from typing import Any, Dict

from PIL import Image

from billflow.app.nodes.base_node import BaseStageNode
from billflow.core.models.database import Document
from billflow.core.models.extraction import ExtractionPayload
from billflow.core.models.state import ErrorCode, ProcessingStage
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class GeneralOcrNode(BaseStageNode):
    """
    GENERAL_OCR node: recognize all text on the binarized track B image

    A failure here sends the document to NEEDS_REVIEW with the stage frozen.
    """

    stage = ProcessingStage.GENERAL_OCR
    failure_code = ErrorCode.GENERAL_OCR_FAILED

    def execute(self, document: Document) -> Dict[str, Any]:
        image = Image.open(io.BytesIO(self.context.artifacts.get(document.track_b_path)))
        text = self.context.recognizer.recognize(image) or ''

        payload = ExtractionPayload.load(document.extracted_json)
        payload.raw_text = text

        logger.info(f"General OCR extracted {len(text)} characters")
        return {
            'stage': ProcessingStage.LLM_NORMALIZE,
            'raw_text': text,
            'extracted_json': payload.dump(),
        }
