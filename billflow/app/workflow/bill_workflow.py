"""
LangGraph Workflow - Utility bill stage engine

The graph has one node per processing stage. The entry point and every
edge are routed by the stage stored on the document, so a run always
resumes where the record says and never repeats a committed stage.
"""
from typing import Dict, Optional

from langgraph.graph import StateGraph, START, END

from billflow.app.nodes.base_node import BaseStageNode, StageContext
from billflow.app.nodes.general_ocr_node import GeneralOcrNode
from billflow.app.nodes.llm_normalize_node import LlmNormalizeNode
from billflow.app.nodes.preprocess_node import PreprocessNode
from billflow.app.nodes.template_ocr_node import TemplateOcrNode
from billflow.app.nodes.validate_node import ValidateNode
from billflow.core.models.database import Document
from billflow.core.models.state import BillState, DocumentStatus, ErrorCode, ProcessingStage
from billflow.core.utils.error_handler import BillProcessingError, DocumentNotFoundError
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

STAGE_NODES = (
    PreprocessNode,
    TemplateOcrNode,
    GeneralOcrNode,
    LlmNormalizeNode,
    ValidateNode,
)


def route_by_stage(state: BillState) -> str:
    """
    Pick the next node from the committed stage

    Args:
        state: Current run state

    Returns:
        Node name for the stored stage, or END when the run halted,
        the document left IN_PROGRESS, or processing is DONE
    """
    if state.get('halted'):
        logger.info("Run halted - routing to END")
        return END
    if state.get('status') != DocumentStatus.IN_PROGRESS.value:
        return END
    stage = state.get('stage')
    if stage == ProcessingStage.DONE.value:
        return END
    return ProcessingStage(stage).value


def create_workflow(nodes: Dict[ProcessingStage, BaseStageNode]):
    """
    Build and compile the stage graph

    Args:
        nodes: Stage to node instance

    Returns:
        Compiled StateGraph
    """
    logger.info("Building utility bill workflow")

    workflow = StateGraph(BillState)
    for stage, node in nodes.items():
        workflow.add_node(stage.value, node)

    routes = {stage.value: stage.value for stage in nodes}
    routes[END] = END

    workflow.add_conditional_edges(START, route_by_stage, routes)
    for stage in nodes:
        workflow.add_conditional_edges(stage.value, route_by_stage, routes)

    return workflow.compile()


class StageEngine:
    """Runs one document from its stored stage until it stops"""

    def __init__(self, context: StageContext, lease_seconds: float = 300):
        self.context = context
        self.lease_seconds = lease_seconds
        self.nodes: Dict[ProcessingStage, BaseStageNode] = {
            node_class.stage: node_class(context) for node_class in STAGE_NODES
        }
        self.workflow = create_workflow(self.nodes)

    @property
    def store(self):
        return self.context.store

    def run(self, document_id: str) -> Optional[Document]:
        """
        Advance a document as far as it can go

        A document that is not IN_PROGRESS, or whose lease is held by
        another live run, is left untouched.

        Args:
            document_id: Document to process

        Returns:
            The document after the run, or None if it does not exist
        """
        try:
            document = self.store.get(document_id)
        except DocumentNotFoundError:
            logger.warning(f"Skipping unknown utility bill {document_id}")
            return None

        if document.status != DocumentStatus.IN_PROGRESS.value:
            logger.info(f"Skipping {document_id}: status is {document.status}")
            return document

        token = self.store.claim(document_id, self.lease_seconds)
        if token is None:
            return self.store.get(document_id)

        try:
            document = self.store.get(document_id)
            logger.info(f"Running {document_id} from stage {document.stage}")
            self.workflow.invoke({
                'document_id': document_id,
                'lease_token': token,
                'stage': document.stage,
                'status': document.status,
                'halted': False,
            })
        except Exception as e:
            error_info = self.context.error_handler.handle_error(e, node='PIPELINE', document_id=document_id)
            code = error_info['code'] if isinstance(e, BillProcessingError) else ErrorCode.PIPELINE_FAILED
            self.store.mark_failed(document_id, token, code, error_info['message'])
            self.store.record_audit(
                document_id=document_id,
                node_name='PIPELINE',
                action='PIPELINE_execute',
                result='failed',
                details={'error': error_info},
            )
        finally:
            self.store.release(document_id, token)

        return self.store.get(document_id)
