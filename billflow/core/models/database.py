"""
Database models and schema for the Utility Bill pipeline
"""
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, Column, String, Float, Integer, DateTime, JSON, Text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from billflow.core.models.state import DocumentStatus, ProcessingStage
from billflow.core.utils.helpers import utcnow, generate_document_id

Base = declarative_base()


class Document(Base):
    """One uploaded utility bill and its processing state"""
    __tablename__ = 'utility_bills'

    id = Column(String, primary_key=True, default=generate_document_id)
    owner_id = Column(String, nullable=False, index=True)
    site_id = Column(String)
    file_name = Column(String)
    content_type = Column(String)

    # Extracted / confirmed fields
    vendor_name = Column(String)
    bill_type = Column(String)  # ELECTRICITY, WATER, GAS, TELECOM, TAX, ETC
    amount_due = Column(Integer)
    due_date = Column(String)
    billing_period_start = Column(String)
    billing_period_end = Column(String)
    customer_no = Column(String)
    payment_account = Column(String)

    # Pipeline state
    status = Column(String, nullable=False, default=DocumentStatus.IN_PROGRESS.value, index=True)
    stage = Column(String, nullable=False, default=ProcessingStage.PREPROCESS.value)
    confidence = Column(Float)
    track = Column(String)  # A, B
    template_id = Column(String)

    # Diagnostics
    last_error_code = Column(String)
    last_error_message = Column(Text)

    # Artifacts
    original_path = Column(String)
    scan_path = Column(String)
    track_a_path = Column(String)
    track_b_path = Column(String)

    # Raw extraction
    raw_text = Column(Text)
    extracted_json = Column(JSON)

    # Execution lease
    lease_token = Column(String)
    lease_expires_at = Column(DateTime)

    # Review
    confirmation_source = Column(String)  # AUTO, HUMAN
    reviewed_by = Column(String)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the public document fields (lease internals excluded)"""
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'site_id': self.site_id,
            'file_name': self.file_name,
            'content_type': self.content_type,
            'vendor_name': self.vendor_name,
            'bill_type': self.bill_type,
            'amount_due': self.amount_due,
            'due_date': self.due_date,
            'billing_period_start': self.billing_period_start,
            'billing_period_end': self.billing_period_end,
            'customer_no': self.customer_no,
            'payment_account': self.payment_account,
            'status': self.status,
            'stage': self.stage,
            'confidence': self.confidence,
            'track': self.track,
            'template_id': self.template_id,
            'last_error_code': self.last_error_code,
            'last_error_message': self.last_error_message,
            'confirmation_source': self.confirmation_source,
            'reviewed_by': self.reviewed_by,
            'extracted_json': self.extracted_json,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Document(id={self.id}, status={self.status}, stage={self.stage})>"


class AuditLog(Base):
    """Audit log table"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String, nullable=False, index=True)
    node_name = Column(String)
    action = Column(String)
    result = Column(String)
    details = Column(JSON)
    timestamp = Column(DateTime, default=utcnow)


class Database:
    """Owns the engine and session factory for one database URL"""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Create the engine and make sure tables exist

        Args:
            database_url: Any SQLAlchemy URL
            echo: Log emitted SQL
        """
        self.database_url = database_url
        engine_kwargs: Dict[str, Any] = {'echo': echo}

        if database_url.startswith('sqlite'):
            # Worker threads share the connection pool
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if ':memory:' in database_url or database_url == 'sqlite://':
                engine_kwargs['poolclass'] = StaticPool

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.init_db()

    def init_db(self):
        """Create tables"""
        Base.metadata.create_all(self.engine)

    def session(self):
        """Get database session"""
        return self.SessionLocal()

    def dispose(self, drop: Optional[bool] = False):
        if drop:
            Base.metadata.drop_all(self.engine)
        self.engine.dispose()
