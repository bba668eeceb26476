"""
State vocabulary for the utility bill processing workflow

Every value here is stored on the document row or sent over the wire,
so the strings must stay stable.
"""
from enum import Enum
from typing import TypedDict, Optional


class DocumentStatus(str, Enum):
    """Externally visible lifecycle phase of a document"""
    IN_PROGRESS = "IN_PROGRESS"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class ProcessingStage(str, Enum):
    """Automated processing step, meaningful only while IN_PROGRESS"""
    PREPROCESS = "PREPROCESS"
    TEMPLATE_OCR = "TEMPLATE_OCR"
    GENERAL_OCR = "GENERAL_OCR"
    LLM_NORMALIZE = "LLM_NORMALIZE"
    VALIDATE = "VALIDATE"
    DONE = "DONE"


STAGE_ORDER = list(ProcessingStage)


def stage_index(stage) -> int:
    """Position of a stage in the fixed processing sequence"""
    return STAGE_ORDER.index(ProcessingStage(stage))


class BillType(str, Enum):
    ELECTRICITY = "ELECTRICITY"
    WATER = "WATER"
    GAS = "GAS"
    TELECOM = "TELECOM"
    TAX = "TAX"
    ETC = "ETC"


class Track(str, Enum):
    """Extraction strategy that produced the field set"""
    TEMPLATE = "A"
    GENERAL = "B"


class ArtifactKind(str, Enum):
    ORIGINAL = "original"
    SCAN = "scan.png"
    TRACK_A = "track_a.png"
    TRACK_B = "track_b.png"


class ErrorCode(str, Enum):
    DOC_DETECT_FAILED = "DOC_DETECT_FAILED"
    PREPROCESS_FAILED = "PREPROCESS_FAILED"
    TEMPLATE_OCR_FAILED = "TEMPLATE_OCR_FAILED"
    GENERAL_OCR_FAILED = "GENERAL_OCR_FAILED"
    LLM_FAILED = "LLM_FAILED"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INCOMPLETE_CONFIRMATION = "INCOMPLETE_CONFIRMATION"
    STORAGE_FAILED = "STORAGE_FAILED"
    PIPELINE_FAILED = "PIPELINE_FAILED"


class ConfirmationSource(str, Enum):
    AUTO = "AUTO"
    HUMAN = "HUMAN"


# Fields that must be present and valid before a document may be CONFIRMED
REQUIRED_FIELDS = ('vendor_name', 'bill_type', 'amount_due', 'due_date')

# All extracted/confirmable document fields
DOCUMENT_FIELDS = (
    'vendor_name',
    'bill_type',
    'amount_due',
    'due_date',
    'billing_period_start',
    'billing_period_end',
    'customer_no',
    'payment_account',
)


class BillState(TypedDict, total=False):
    """
    State carried between workflow nodes for a single run.
    The document row is the source of truth; this only tracks
    where the run is and whether it still owns the document.
    """
    document_id: str
    lease_token: str
    stage: str
    status: str
    halted: Optional[bool]
