"""
Service wiring

Every collaborator is built here once and passed down through
constructors, so tests can swap any adapter for a stub.
"""
from typing import Optional

from billflow.app.nodes.base_node import StageContext
from billflow.app.services.bill_service import UtilityBillService
from billflow.app.services.confirmation import ConfirmationNormalizer
from billflow.app.workflow.bill_workflow import StageEngine
from billflow.app.workflow.confidence import ConfidenceValidator
from billflow.app.workflow.sweeper import RecoverySweeper, SweepScheduler
from billflow.app.workflow.trigger import PipelineTaskQueue, TriggerController
from billflow.core.config.config import Config, config as default_config
from billflow.core.models.database import Database
from billflow.core.models.document_store import DocumentStore
from billflow.core.utils.error_handler import ErrorHandler
from billflow.core.utils.logging_config import get_logger
from billflow.integrations.imaging.preprocessor import ImagePreprocessor
from billflow.integrations.llm.llm_normalizer import LlmNormalizer
from billflow.integrations.ocr.recognizers import FallbackRecognizer
from billflow.integrations.ocr.template_matcher import TemplateMatcher, tesseract_ocr
from billflow.integrations.storage.artifact_store import LocalArtifactStore
from billflow.integrations.tools.ocr_tool_picker import OcrToolPicker

logger = get_logger(__name__)


class ServiceContainer:
    """Holds the wired services for one application instance"""

    def __init__(
        self,
        database: Database,
        store: DocumentStore,
        artifacts,
        engine: StageEngine,
        task_queue: PipelineTaskQueue,
        trigger: TriggerController,
        sweeper: RecoverySweeper,
        scheduler: SweepScheduler,
        service: UtilityBillService,
        cron_secret: str = ''
    ):
        self.database = database
        self.store = store
        self.artifacts = artifacts
        self.engine = engine
        self.task_queue = task_queue
        self.trigger = trigger
        self.sweeper = sweeper
        self.scheduler = scheduler
        self.service = service
        self.cron_secret = cron_secret

    def start(self):
        """Start the worker pool and the sweep scheduler"""
        self.task_queue.start()
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()
        self.task_queue.stop()


def build_services(
    cfg: Config = default_config,
    database: Optional[Database] = None,
    artifacts=None,
    preprocessor=None,
    template_matcher=None,
    recognizer=None,
    normalizer=None
) -> ServiceContainer:
    """
    Wire the application from configuration

    Any adapter passed in replaces the one that would be built from cfg.
    """
    database = database or Database(cfg.DATABASE_URL)
    store = DocumentStore(database)
    artifacts = artifacts or LocalArtifactStore(
        root=cfg.ARTIFACT_ROOT,
        url_base=cfg.ARTIFACT_URL_BASE,
        signing_secret=cfg.ARTIFACT_SIGNING_SECRET,
    )

    if template_matcher is None and cfg.TEMPLATES_ENABLED:
        template_matcher = TemplateMatcher.from_config(
            cfg.load_templates_config(),
            ocr=tesseract_ocr(cfg.OCR_LANGUAGES),
            match_threshold=cfg.TEMPLATE_MATCH_THRESHOLD,
            min_fields=cfg.TEMPLATE_MIN_FIELDS,
        )

    context = StageContext(
        store=store,
        artifacts=artifacts,
        preprocessor=preprocessor or ImagePreprocessor(),
        template_matcher=template_matcher,
        recognizer=recognizer or FallbackRecognizer.from_picker(
            OcrToolPicker(cfg.load_tools_config()),
            languages=cfg.OCR_LANGUAGES,
        ),
        normalizer=normalizer or LlmNormalizer(
            api_key=cfg.LLM_API_KEY,
            model=cfg.LLM_MODEL,
            base_url=cfg.LLM_BASE_URL,
            site_url=cfg.LLM_SITE_URL,
            app_name=cfg.LLM_APP_NAME,
            timeout=cfg.LLM_TIMEOUT_SECONDS,
        ),
        validator=ConfidenceValidator(threshold=cfg.CONFIDENCE_THRESHOLD),
        error_handler=ErrorHandler(),
    )

    engine = StageEngine(context, lease_seconds=cfg.LEASE_SECONDS)
    task_queue = PipelineTaskQueue(engine, workers=cfg.PIPELINE_WORKERS)
    trigger = TriggerController(store, task_queue)
    sweeper = RecoverySweeper(
        store,
        engine,
        default_limit=cfg.SWEEP_DEFAULT_LIMIT,
        max_limit=cfg.SWEEP_MAX_LIMIT,
        time_budget_seconds=cfg.SWEEP_TIME_BUDGET_SECONDS,
    )
    scheduler = SweepScheduler(sweeper, cfg.SWEEP_INTERVAL_SECONDS)
    service = UtilityBillService(
        store=store,
        artifacts=artifacts,
        trigger=trigger,
        sweeper=sweeper,
        confirmation=ConfirmationNormalizer(store),
        signed_url_ttl=cfg.SIGNED_URL_TTL_SECONDS,
    )

    logger.info("Utility bill services wired")
    return ServiceContainer(
        database=database,
        store=store,
        artifacts=artifacts,
        engine=engine,
        task_queue=task_queue,
        trigger=trigger,
        sweeper=sweeper,
        scheduler=scheduler,
        service=service,
        cron_secret=cfg.CRON_SECRET,
    )
