import pytest

from billflow.app.workflow.confidence import ConfidenceValidator, fields_from_row, required_field_issues
from billflow.core.models.extraction import ExtractedFields
from billflow.core.models.state import BillType, DocumentStatus, ErrorCode, Track

from stubs import good_fields


@pytest.fixture
def validator():
    return ConfidenceValidator(threshold=0.85)


def test_required_field_issues_lists_each_missing_field():
    issues = required_field_issues({'vendor_name': '  ', 'bill_type': 'BOGUS', 'amount_due': -1})
    assert set(issues) == {'vendor_name', 'bill_type', 'amount_due', 'due_date'}
    assert required_field_issues(good_fields().model_dump()) == {}


def test_template_track_score_scales_with_match(validator):
    assert validator.score(good_fields(), Track.TEMPLATE, match_score=1.0) == pytest.approx(1.0)
    assert validator.score(good_fields(), Track.TEMPLATE, match_score=0.6) == pytest.approx(0.8)


def test_general_track_score_applies_trust_factor_and_penalties(validator):
    fields = good_fields()
    assert validator.score(fields, Track.GENERAL, llm_confidence=1.0) == pytest.approx(0.95)
    assert validator.score(
        fields, Track.GENERAL, llm_confidence=1.0, ambiguities=['due_date']
    ) == pytest.approx(0.85)
    assert validator.score(fields, Track.GENERAL, llm_confidence=1.0, has_text=False) == pytest.approx(0.75)


def test_score_counts_only_valid_required_fields(validator):
    fields = good_fields(amount_due=None, due_date=None)
    assert validator.score(fields, Track.TEMPLATE, match_score=1.0) == pytest.approx(0.5)


def test_missing_outline_caps_score(validator):
    assert validator.score(good_fields(), Track.TEMPLATE, match_score=1.0, doc_detected=False) == pytest.approx(0.6)


def test_score_is_clamped_to_zero(validator):
    score = validator.score(
        ExtractedFields(), Track.GENERAL, llm_confidence=0.1, ambiguities=['a', 'b', 'c'], has_text=False
    )
    assert score == 0.0


def test_confident_complete_extraction_is_confirmed(validator):
    verdict = validator.validate(good_fields(), Track.GENERAL, llm_confidence=0.98)
    assert verdict.status == DocumentStatus.CONFIRMED
    assert verdict.error_code is None
    assert verdict.message is None


def test_low_score_needs_review(validator):
    verdict = validator.validate(good_fields(), Track.GENERAL, llm_confidence=0.7, ambiguities=['customer_no'])
    assert verdict.status == DocumentStatus.NEEDS_REVIEW
    assert verdict.error_code == ErrorCode.LOW_CONFIDENCE
    assert 'below threshold' in verdict.message
    assert 'customer_no' in verdict.message


def test_invalid_required_field_blocks_confirmation_even_with_high_score():
    validator = ConfidenceValidator(threshold=0.5)
    verdict = validator.validate(good_fields(due_date=None), Track.TEMPLATE, match_score=1.0)
    assert verdict.confidence == pytest.approx(0.75)
    assert verdict.status == DocumentStatus.NEEDS_REVIEW
    assert verdict.error_code == ErrorCode.VALIDATION_FAILED
    assert 'due_date is missing' in verdict.message


def test_undetected_outline_never_auto_confirms(validator):
    verdict = validator.validate(good_fields(), Track.TEMPLATE, match_score=1.0, doc_detected=False)
    assert verdict.status == DocumentStatus.NEEDS_REVIEW
    assert verdict.error_code == ErrorCode.LOW_CONFIDENCE
    assert 'document outline not detected' in verdict.message


def test_fields_from_row_drops_unknown_bill_type():
    fields = fields_from_row({'vendor_name': 'KT', 'bill_type': 'INTERNET', 'amount_due': 100, 'id': 'x'})
    assert fields.vendor_name == 'KT'
    assert fields.bill_type is None
    assert fields_from_row({'bill_type': 'GAS'}).bill_type == BillType.GAS
