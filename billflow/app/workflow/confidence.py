"""
Confidence scoring and review routing
"""
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from billflow.core.models.extraction import ExtractedFields
from billflow.core.models.state import DocumentStatus, ErrorCode, Track, REQUIRED_FIELDS
from billflow.core.utils.helpers import parse_date, parse_bill_type, clean_text

LLM_TRUST_FACTOR = 0.95
AMBIGUITY_PENALTY = 0.1
NO_TEXT_PENALTY = 0.2
NO_OUTLINE_CAP = 0.6


def required_field_issues(values: Mapping[str, Any]) -> Dict[str, str]:
    """
    Check the fields a CONFIRMED document must carry

    Args:
        values: Field name to value (document columns or extracted fields)

    Returns:
        Field name to human-readable problem; empty when the record may be confirmed
    """
    issues = {}
    if not clean_text(values.get('vendor_name')):
        issues['vendor_name'] = 'vendor_name is missing'

    bill_type = values.get('bill_type')
    if bill_type is None:
        issues['bill_type'] = 'bill_type is missing'
    elif parse_bill_type(getattr(bill_type, 'value', bill_type)) is None:
        issues['bill_type'] = f'bill_type {bill_type!r} is not a known bill type'

    amount = values.get('amount_due')
    if amount is None:
        issues['amount_due'] = 'amount_due is missing'
    elif amount < 0:
        issues['amount_due'] = 'amount_due is negative'

    due_date = values.get('due_date')
    if due_date is None:
        issues['due_date'] = 'due_date is missing'
    elif parse_date(due_date) is None:
        issues['due_date'] = f'due_date {due_date!r} is not a valid date'
    return issues


class Verdict(BaseModel):
    """Outcome of validating one extraction"""
    status: DocumentStatus
    confidence: float
    error_code: Optional[ErrorCode] = None
    reasons: List[str] = Field(default_factory=list)

    @property
    def message(self) -> Optional[str]:
        return '; '.join(self.reasons) if self.reasons else None


class ConfidenceValidator:
    """
    Scores an extraction and decides between CONFIRMED and NEEDS_REVIEW

    Track A score scales completeness by the template match score.
    Track B score scales completeness by the model's own confidence and
    subtracts penalties for ambiguities and missing OCR text. A photo
    whose outline was not found never scores above 0.6.
    """

    def __init__(self, threshold: float = 0.85):
        self.threshold = threshold

    def score(
        self,
        fields: ExtractedFields,
        track: Optional[Track],
        match_score: Optional[float] = None,
        llm_confidence: Optional[float] = None,
        ambiguities: Optional[List[str]] = None,
        doc_detected: bool = True,
        has_text: bool = True
    ) -> float:
        values = fields.model_dump()
        issues = required_field_issues(values)
        valid_required = sum(1 for name in REQUIRED_FIELDS if name not in issues)
        completeness = valid_required / len(REQUIRED_FIELDS)

        if track == Track.TEMPLATE:
            score = completeness * (0.5 + 0.5 * (match_score or 0.0))
        else:
            confidence = llm_confidence if llm_confidence is not None else 0.0
            score = completeness * confidence * LLM_TRUST_FACTOR
            score -= AMBIGUITY_PENALTY * len(ambiguities or [])
            if not has_text:
                score -= NO_TEXT_PENALTY

        if not doc_detected:
            score = min(score, NO_OUTLINE_CAP)
        return min(1.0, max(0.0, score))

    def validate(
        self,
        fields: ExtractedFields,
        track: Optional[Track],
        match_score: Optional[float] = None,
        llm_confidence: Optional[float] = None,
        ambiguities: Optional[List[str]] = None,
        doc_detected: bool = True,
        has_text: bool = True
    ) -> Verdict:
        """
        Produce the verdict for an extraction

        Returns:
            Verdict with CONFIRMED only when the score clears the threshold
            and every required field is present and valid
        """
        confidence = self.score(
            fields,
            track,
            match_score=match_score,
            llm_confidence=llm_confidence,
            ambiguities=ambiguities,
            doc_detected=doc_detected,
            has_text=has_text,
        )
        issues = required_field_issues(fields.model_dump())

        if issues:
            reasons = list(issues.values())
            if confidence < self.threshold:
                reasons.append(f'confidence {confidence:.2f} below threshold {self.threshold:.2f}')
            return Verdict(
                status=DocumentStatus.NEEDS_REVIEW,
                confidence=confidence,
                error_code=ErrorCode.VALIDATION_FAILED,
                reasons=reasons,
            )

        if confidence < self.threshold:
            reasons = [f'confidence {confidence:.2f} below threshold {self.threshold:.2f}']
            if ambiguities:
                reasons.append(f"ambiguous: {', '.join(ambiguities)}")
            if not doc_detected:
                reasons.append('document outline not detected')
            if not has_text:
                reasons.append('no OCR text')
            return Verdict(
                status=DocumentStatus.NEEDS_REVIEW,
                confidence=confidence,
                error_code=ErrorCode.LOW_CONFIDENCE,
                reasons=reasons,
            )

        return Verdict(status=DocumentStatus.CONFIRMED, confidence=confidence)


def fields_from_row(values: Dict[str, Any]) -> ExtractedFields:
    """Build ExtractedFields from document column values, dropping unknown bill types"""
    data = {name: values.get(name) for name in ExtractedFields.model_fields}
    data['bill_type'] = parse_bill_type(data.get('bill_type'))
    return ExtractedFields(**data)
