"""
Structured extraction records shared by both tracks

The payload persisted on a document is a closed, versioned record rather
than a free-form map. Bill-type specific details are a tagged variant
keyed on bill_type. raw_text is kept alongside for audit.
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from typing_extensions import Annotated

from billflow.core.models.state import BillType, Track

PAYLOAD_SCHEMA_VERSION = 1


class ExtractedFields(BaseModel):
    """Field set produced by either track, already normalized"""
    vendor_name: Optional[str] = None
    bill_type: Optional[BillType] = None
    amount_due: Optional[int] = None
    due_date: Optional[str] = None
    billing_period_start: Optional[str] = None
    billing_period_end: Optional[str] = None
    customer_no: Optional[str] = None
    payment_account: Optional[str] = None

    def populated_count(self) -> int:
        return sum(1 for value in self.model_dump().values() if value is not None)

    def column_values(self) -> Dict[str, Any]:
        """Values ready to be written onto the document row"""
        values = self.model_dump()
        if self.bill_type is not None:
            values['bill_type'] = self.bill_type.value
        return values


class Evidence(BaseModel):
    """Source text the language model quoted for its key answers"""
    amount_text: Optional[str] = None
    due_date_text: Optional[str] = None
    vendor_text: Optional[str] = None


class MeteredBillDetails(BaseModel):
    bill_type: Literal['ELECTRICITY', 'WATER', 'GAS']
    usage: Optional[float] = None
    usage_unit: Optional[str] = None


class TelecomBillDetails(BaseModel):
    bill_type: Literal['TELECOM']
    service_number: Optional[str] = None


class TaxBillDetails(BaseModel):
    bill_type: Literal['TAX']
    tax_item: Optional[str] = None


class OtherBillDetails(BaseModel):
    bill_type: Literal['ETC']


BillDetails = Annotated[
    Union[MeteredBillDetails, TelecomBillDetails, TaxBillDetails, OtherBillDetails],
    Field(discriminator='bill_type')
]

DETAIL_MODELS = {
    BillType.ELECTRICITY: MeteredBillDetails,
    BillType.WATER: MeteredBillDetails,
    BillType.GAS: MeteredBillDetails,
    BillType.TELECOM: TelecomBillDetails,
    BillType.TAX: TaxBillDetails,
    BillType.ETC: OtherBillDetails,
}


def build_details(bill_type: BillType, raw: Optional[Dict[str, Any]] = None):
    """Build the tagged detail record for a bill type, ignoring unrelated keys"""
    bill_type = BillType(bill_type)
    model = DETAIL_MODELS[bill_type]
    raw = raw or {}
    known = {
        name: raw.get(name)
        for name in model.model_fields
        if name != 'bill_type' and raw.get(name) is not None
    }
    return model(bill_type=bill_type.value, **known)


class PreprocessNote(BaseModel):
    doc_detected: bool = False
    note: Optional[str] = None


class TemplateMatch(BaseModel):
    """Result of a confident vendor template match (Track A)"""
    template_id: str
    match_score: float
    fields: ExtractedFields
    field_text: Dict[str, Optional[str]] = Field(default_factory=dict)


class LlmExtraction(BaseModel):
    """Parsed language-model response (Track B)"""
    fields: ExtractedFields
    details: Optional[BillDetails] = None
    evidence: Evidence = Field(default_factory=Evidence)
    llm_confidence: float = 0.5
    ambiguities: List[str] = Field(default_factory=list)


class ExtractionPayload(BaseModel):
    """Versioned audit record persisted on the document"""
    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION
    track: Optional[Track] = None
    template_id: Optional[str] = None
    match_score: Optional[float] = None
    llm_confidence: Optional[float] = None
    ambiguities: List[str] = Field(default_factory=list)
    fields: ExtractedFields = Field(default_factory=ExtractedFields)
    details: Optional[BillDetails] = None
    evidence: Evidence = Field(default_factory=Evidence)
    preprocess: PreprocessNote = Field(default_factory=PreprocessNote)
    raw_text: Optional[str] = None

    @classmethod
    def load(cls, data: Optional[Dict[str, Any]]) -> 'ExtractionPayload':
        """Load a stored payload, starting fresh when nothing was stored"""
        if not data:
            return cls()
        return cls.model_validate(data)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')
