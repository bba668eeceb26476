"""
LLM_NORMALIZE Node - Structure raw OCR text with the language model
"""
from typing import Any, Dict

from billflow.app.nodes.base_node import BaseStageNode
from billflow.core.models.database import Document
from billflow.core.models.extraction import ExtractionPayload
from billflow.core.models.state import ErrorCode, ProcessingStage, Track
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class LlmNormalizeNode(BaseStageNode):
    """
    LLM_NORMALIZE node: turn raw_text into the document field set (track B)

    A failure here sends the document to NEEDS_REVIEW with the stage frozen.
    """

    stage = ProcessingStage.LLM_NORMALIZE
    failure_code = ErrorCode.LLM_FAILED

    def execute(self, document: Document) -> Dict[str, Any]:
        extraction = self.context.normalizer.normalize(document.raw_text or '')

        payload = ExtractionPayload.load(document.extracted_json)
        payload.track = Track.GENERAL
        payload.template_id = None
        payload.match_score = None
        payload.llm_confidence = extraction.llm_confidence
        payload.ambiguities = extraction.ambiguities
        payload.fields = extraction.fields
        payload.details = extraction.details
        payload.evidence = extraction.evidence
        payload.raw_text = document.raw_text

        return {
            'stage': ProcessingStage.VALIDATE,
            'track': Track.GENERAL,
            'template_id': None,
            'extracted_json': payload.dump(),
            **extraction.fields.column_values(),
        }
