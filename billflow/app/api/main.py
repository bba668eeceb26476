"""
Utility Bill API

Caller identity arrives as an already-verified X-User-Id header.
"""
import hmac
import mimetypes
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from billflow.app.api.dependencies import ServiceContainer, build_services
from billflow.app.workflow.sweeper import SweepReport
from billflow.core.config.config import config
from billflow.core.utils.error_handler import (
    BillProcessingError,
    DocumentNotFoundError,
    InvalidTransitionError,
    InvalidUploadError,
    OwnershipError,
    StorageError,
)
from billflow.core.utils.helpers import utcnow
from billflow.core.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

FieldValue = Optional[Union[str, int, float]]


# Pydantic models
class ConfirmRequest(BaseModel):
    """Reviewer corrections; every field is optional and parsed leniently"""
    vendor_name: FieldValue = None
    bill_type: FieldValue = None
    amount_due: FieldValue = None
    due_date: FieldValue = None
    billing_period_start: FieldValue = None
    billing_period_end: FieldValue = None
    customer_no: FieldValue = None
    payment_account: FieldValue = None


class DocumentResponse(BaseModel):
    item: Dict[str, Any]


class SweepResponse(BaseModel):
    report: SweepReport


def to_http_error(error: BillProcessingError) -> HTTPException:
    """Map service errors onto HTTP status codes"""
    if isinstance(error, DocumentNotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, OwnershipError):
        return HTTPException(status_code=403, detail="Not allowed to access this utility bill")
    if isinstance(error, InvalidTransitionError):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, InvalidUploadError):
        return HTTPException(status_code=400, detail=error.message)
    logger.error(f"Unhandled service error: {error.message}")
    return HTTPException(status_code=500, detail=error.message)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_caller_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    caller_id = (x_user_id or '').strip()
    if not caller_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    return caller_id


def create_app(services: Optional[ServiceContainer] = None, start_background: bool = True) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        services: Pre-wired services; built from config when omitted
        start_background: Start the worker pool and sweep scheduler with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            setup_logging(config.LOG_LEVEL, config.LOG_FILE)
        container = services or build_services(config)
        app.state.services = container
        if start_background:
            container.start()
        logger.info("Utility bill API started")
        yield
        if start_background:
            container.stop()

    app = FastAPI(
        title="Utility Bill Processing API",
        description="Upload utility bills, track their extraction and confirm the results",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/api/utility-bills", response_model=DocumentResponse, status_code=201)
    def create_utility_bill(
        file: UploadFile = File(...),
        site_id: Optional[str] = Form(default=None),
        caller_id: str = Depends(get_caller_id),
        container: ServiceContainer = Depends(get_services)
    ):
        """
        Upload a bill and start processing

        Returns:
            The created document (IN_PROGRESS / PREPROCESS)
        """
        try:
            document = container.service.create(
                owner_id=caller_id,
                file_bytes=file.file.read(),
                file_name=file.filename,
                content_type=file.content_type,
                site_id=site_id,
            )
            return DocumentResponse(item=document.to_dict())
        except BillProcessingError as e:
            raise to_http_error(e)

    @app.post("/api/utility-bills/sweep", response_model=SweepResponse)
    def sweep_utility_bills(
        limit: Optional[int] = Query(default=None),
        target_id: Optional[str] = Query(default=None),
        cron_secret: Optional[str] = Query(default=None),
        x_cron_secret: Optional[str] = Header(default=None),
        container: ServiceContainer = Depends(get_services)
    ):
        """Resume stalled documents; requires the cron secret"""
        provided = x_cron_secret or cron_secret or ''
        expected = container.cron_secret.encode('utf-8')
        if not expected or not hmac.compare_digest(provided.encode('utf-8'), expected):
            raise HTTPException(status_code=401, detail="Invalid cron secret")
        try:
            report = container.service.sweep(limit=limit, target_id=target_id)
            return SweepResponse(report=report)
        except BillProcessingError as e:
            raise to_http_error(e)

    @app.get("/api/utility-bills/{document_id}", response_model=DocumentResponse)
    def get_utility_bill(
        document_id: str,
        caller_id: str = Depends(get_caller_id),
        container: ServiceContainer = Depends(get_services)
    ):
        """Document fields with signed artifact URLs"""
        try:
            return DocumentResponse(item=container.service.fetch(document_id, caller_id))
        except BillProcessingError as e:
            raise to_http_error(e)

    @app.post("/api/utility-bills/{document_id}/retry", response_model=DocumentResponse)
    def retry_utility_bill(
        document_id: str,
        caller_id: str = Depends(get_caller_id),
        container: ServiceContainer = Depends(get_services)
    ):
        try:
            document = container.service.retry(document_id, caller_id)
            return DocumentResponse(item=document.to_dict())
        except BillProcessingError as e:
            raise to_http_error(e)

    @app.post("/api/utility-bills/{document_id}/confirm", response_model=DocumentResponse)
    def confirm_utility_bill(
        document_id: str,
        body: Optional[ConfirmRequest] = None,
        caller_id: str = Depends(get_caller_id),
        container: ServiceContainer = Depends(get_services)
    ):
        """
        Confirm a bill, applying any corrections

        Unparseable values are ignored. If required fields are still
        missing the corrections are saved and the bill stays in review.
        """
        fields = body.model_dump(exclude_none=True) if body else {}
        try:
            document = container.service.confirm(document_id, caller_id, fields)
            return DocumentResponse(item=document.to_dict())
        except BillProcessingError as e:
            raise to_http_error(e)

    @app.post("/api/utility-bills/{document_id}/reject", response_model=DocumentResponse)
    def reject_utility_bill(
        document_id: str,
        caller_id: str = Depends(get_caller_id),
        container: ServiceContainer = Depends(get_services)
    ):
        try:
            document = container.service.reject(document_id, caller_id)
            return DocumentResponse(item=document.to_dict())
        except BillProcessingError as e:
            raise to_http_error(e)

    @app.get("/api/artifacts/{path:path}")
    def download_artifact(
        path: str,
        expires: int = Query(...),
        signature: str = Query(...),
        container: ServiceContainer = Depends(get_services)
    ):
        """Serve an artifact behind a signed, expiring URL"""
        if not container.artifacts.verify(path, expires, signature):
            raise HTTPException(status_code=403, detail="Invalid or expired signature")
        try:
            data = container.artifacts.get(path)
        except StorageError as e:
            raise HTTPException(status_code=404, detail=e.message)
        media_type = mimetypes.guess_type(path)[0] or 'application/octet-stream'
        return Response(content=data, media_type=media_type)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": utcnow().isoformat()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    setup_logging(config.LOG_LEVEL, config.LOG_FILE)
    logger.info(f"Starting Utility Bill API on http://{config.APP_HOST}:{config.APP_PORT}")
    uvicorn.run(app, host=config.APP_HOST, port=config.APP_PORT, log_level="info", access_log=False)
