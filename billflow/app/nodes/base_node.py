"""
Base node class for the LangGraph stage nodes
"""
from typing import Any, Dict, Optional
from abc import ABC, abstractmethod

from billflow.core.models.database import Document
from billflow.core.models.document_store import DocumentStore
from billflow.core.models.state import BillState, DocumentStatus, ErrorCode, ProcessingStage
from billflow.core.utils.error_handler import ErrorHandler, StorageError
from billflow.core.utils.helpers import utcnow
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class StageContext:
    """
    Collaborators shared by all stage nodes of one engine

    Adapters are plain objects exposing a single method each, so tests can
    pass stubs for any of them.
    """

    def __init__(
        self,
        store: DocumentStore,
        artifacts,
        preprocessor=None,
        template_matcher=None,
        recognizer=None,
        normalizer=None,
        validator=None,
        error_handler: Optional[ErrorHandler] = None
    ):
        self.store = store
        self.artifacts = artifacts
        self.preprocessor = preprocessor
        self.template_matcher = template_matcher
        self.recognizer = recognizer
        self.normalizer = normalizer
        self.validator = validator
        self.error_handler = error_handler or ErrorHandler()


class BaseStageNode(ABC):
    """
    Abstract base class for all stage nodes

    Each node:
    1. Declares the stage it executes and the error code for its failures
    2. Implements execute(), returning the column updates for the stage
    3. Leaves persistence to run(), which commits behind the stage guard
    """

    stage: ProcessingStage
    failure_code: ErrorCode = ErrorCode.PIPELINE_FAILED

    def __init__(self, context: StageContext, name: Optional[str] = None):
        self.context = context
        self.name = name or self.stage.value

    @property
    def store(self) -> DocumentStore:
        return self.context.store

    def __call__(self, state: BillState) -> Dict[str, Any]:
        """Make the node callable for LangGraph"""
        return self.run(state)

    def run(self, state: BillState) -> Dict[str, Any]:
        """
        Run the stage with error handling, audit logging and a guarded commit

        Args:
            state: Current run state

        Returns:
            State update with the committed stage/status, or halted=True
            when the commit guard was lost
        """
        document_id = state['document_id']
        token = state['lease_token']
        logger.info(f"Starting node: {self.name} for {document_id}")
        start_time = utcnow()

        document = self.store.get(document_id)
        try:
            updates = self.execute(document)
            result = "success"
            details: Dict[str, Any] = {}
        except Exception as e:
            error_info = self.context.error_handler.handle_error(e, node=self.name, document_id=document_id)
            updates = self.on_failure(document, e, error_info)
            result = "failed"
            details = {'error': error_info}

        details['duration_ms'] = (utcnow() - start_time).total_seconds() * 1000

        if updates is None:
            code = self.fatal_code(details['error'])
            committed = self.store.mark_failed(document_id, token, code, details['error']['message'])
            status = DocumentStatus.NEEDS_REVIEW.value
            stage = document.stage
            halted = True
        else:
            committed = self.store.commit_stage(document_id, token, self.stage, updates)
            stage = ProcessingStage(updates.get('stage', self.stage)).value
            status = DocumentStatus(updates.get('status', DocumentStatus.IN_PROGRESS)).value
            halted = not committed

        details['committed'] = committed
        self.store.record_audit(
            document_id=document_id,
            node_name=self.name,
            action=f"{self.name}_execute",
            result=result if committed else "halted",
            details={**details, 'stage': stage, 'status': status},
        )

        if not committed:
            return {'halted': True}
        logger.info(f"Completed node: {self.name} -> stage {stage}, status {status}")
        return {'stage': stage, 'status': status, 'halted': halted}

    @abstractmethod
    def execute(self, document: Document) -> Dict[str, Any]:
        """
        Execute the stage logic (must be implemented by subclasses)

        Args:
            document: Current document row

        Returns:
            Column updates, including the next 'stage'
        """
        pass

    def on_failure(self, document: Document, error: Exception, error_info: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Decide what a failure means for the document

        Returns:
            Column updates to commit (non-fatal, the run continues), or
            None to send the document to NEEDS_REVIEW with the stage frozen
        """
        return None

    def fatal_code(self, error_info: Dict[str, Any]) -> ErrorCode:
        if error_info.get('error_type') == StorageError.__name__:
            return ErrorCode.STORAGE_FAILED
        return self.failure_code

    def non_fatal(self, next_stage: ProcessingStage, error_info: Dict[str, Any], **updates) -> Dict[str, Any]:
        """Updates that record a diagnostic and still advance"""
        return {
            'stage': next_stage,
            'last_error_code': self.failure_code,
            'last_error_message': error_info['message'],
            **updates,
        }
