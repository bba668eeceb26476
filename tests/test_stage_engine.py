import pytest

from billflow.app.services.confirmation import ConfirmationNormalizer
from billflow.core.models.extraction import ExtractionPayload, PreprocessNote
from billflow.core.models.state import DocumentStatus, ErrorCode, ProcessingStage, stage_index
from billflow.core.utils.error_handler import NormalizationError, PreprocessError, RecognitionError

from stubs import (
    StubMatcher,
    StubNormalizer,
    StubPreprocessor,
    StubRecognizer,
    good_extraction,
    png_bytes,
    template_match,
)


def audit_nodes(store, document_id):
    return [row.node_name for row in store.list_audit(document_id)]


def test_general_track_auto_confirms(store, artifacts, make_document, make_engine):
    normalizer = StubNormalizer()
    engine = make_engine(normalizer=normalizer)
    document = make_document()

    result = engine.run(document.id)

    assert result.status == DocumentStatus.CONFIRMED.value
    assert result.stage == ProcessingStage.DONE.value
    assert result.track == 'B'
    assert result.confirmation_source == 'AUTO'
    assert result.confidence == pytest.approx(0.98 * 0.95)
    assert result.vendor_name == '한국전력공사'
    assert result.bill_type == 'ELECTRICITY'
    assert result.amount_due == 52340
    assert result.due_date == '2024-03-25'
    assert result.lease_token is None
    assert normalizer.calls == [result.raw_text]

    for path in (result.scan_path, result.track_a_path, result.track_b_path):
        assert artifacts.exists(path)
    assert result.scan_path == f"company-1/{document.id}/scan.png"

    payload = ExtractionPayload.load(result.extracted_json)
    assert payload.track.value == 'B'
    assert payload.details.bill_type == 'ELECTRICITY'
    assert payload.evidence.amount_text == '52,340원'
    assert payload.raw_text == result.raw_text

    assert audit_nodes(store, document.id) == [
        'PREPROCESS', 'TEMPLATE_OCR', 'GENERAL_OCR', 'LLM_NORMALIZE', 'VALIDATE'
    ]


def test_template_match_skips_general_track(make_document, make_engine):
    recognizer = StubRecognizer()
    normalizer = StubNormalizer()
    engine = make_engine(
        template_matcher=StubMatcher(match=template_match()),
        recognizer=recognizer,
        normalizer=normalizer,
    )
    document = make_document()

    result = engine.run(document.id)

    assert result.status == DocumentStatus.CONFIRMED.value
    assert result.track == 'A'
    assert result.template_id == 'kepco_electricity_v1'
    assert result.confidence == pytest.approx(1.0)
    assert recognizer.calls == 0
    assert normalizer.calls == []


def test_template_failure_falls_back_to_general_track(store, make_document, make_engine):
    engine = make_engine(template_matcher=StubMatcher(error=RuntimeError("tesseract is not installed")))
    document = make_document()

    result = engine.run(document.id)

    assert result.status == DocumentStatus.CONFIRMED.value
    assert result.track == 'B'
    assert result.last_error_code is None
    rows = store.list_audit(document.id)
    assert rows[1].node_name == 'TEMPLATE_OCR'
    assert rows[1].result == 'failed'
    assert rows[3].node_name == 'LLM_NORMALIZE'
    assert rows[3].details['stage'] == ProcessingStage.VALIDATE.value


def test_general_ocr_failure_freezes_stage(make_document, make_engine):
    normalizer = StubNormalizer()
    engine = make_engine(
        recognizer=StubRecognizer(error=RecognitionError("All OCR engines failed", node='GENERAL_OCR')),
        normalizer=normalizer,
    )
    document = make_document()

    result = engine.run(document.id)

    assert result.status == DocumentStatus.NEEDS_REVIEW.value
    assert result.stage == ProcessingStage.GENERAL_OCR.value
    assert result.last_error_code == ErrorCode.GENERAL_OCR_FAILED.value
    assert 'All OCR engines failed' in result.last_error_message
    assert result.lease_token is None
    assert normalizer.calls == []


def test_llm_failure_freezes_stage_and_keeps_raw_text(make_document, make_engine):
    engine = make_engine(normalizer=StubNormalizer(error=NormalizationError("LLM request failed: timeout")))
    document = make_document()

    result = engine.run(document.id)

    assert result.status == DocumentStatus.NEEDS_REVIEW.value
    assert result.stage == ProcessingStage.LLM_NORMALIZE.value
    assert result.last_error_code == ErrorCode.LLM_FAILED.value
    assert result.raw_text


def test_preprocess_failure_uses_original_bytes(artifacts, make_document, make_engine):
    original = png_bytes(size=(30, 20), color=(10, 20, 30))
    engine = make_engine(preprocessor=StubPreprocessor(error=PreprocessError("Could not decode image")))
    document = make_document(data=original)

    result = engine.run(document.id)

    assert artifacts.get(result.scan_path) == original
    assert artifacts.get(result.track_b_path) == original
    assert result.stage == ProcessingStage.DONE.value
    # No outline means the score is capped below the threshold
    assert result.status == DocumentStatus.NEEDS_REVIEW.value
    assert result.confidence == pytest.approx(0.6)
    assert result.last_error_code == ErrorCode.LOW_CONFIDENCE.value


def test_undetected_outline_is_recorded_and_reviewed(make_document, make_engine):
    engine = make_engine(preprocessor=StubPreprocessor(doc_detected=False))
    document = make_document()

    result = engine.run(document.id)

    payload = ExtractionPayload.load(result.extracted_json)
    assert payload.preprocess.doc_detected is False
    assert result.status == DocumentStatus.NEEDS_REVIEW.value
    assert 'document outline not detected' in result.last_error_message


def test_low_confidence_needs_review(make_document, make_engine):
    engine = make_engine(normalizer=StubNormalizer(extraction=good_extraction(confidence=0.5)))
    document = make_document()

    result = engine.run(document.id)

    assert result.status == DocumentStatus.NEEDS_REVIEW.value
    assert result.stage == ProcessingStage.DONE.value
    assert result.last_error_code == ErrorCode.LOW_CONFIDENCE.value
    assert result.confirmation_source is None


def test_missing_required_field_fails_validation(make_document, make_engine):
    engine = make_engine(normalizer=StubNormalizer(extraction=good_extraction(due_date=None)))
    document = make_document()

    result = engine.run(document.id)

    assert result.status == DocumentStatus.NEEDS_REVIEW.value
    assert result.last_error_code == ErrorCode.VALIDATION_FAILED.value
    assert 'due_date is missing' in result.last_error_message


def test_missing_original_is_a_storage_failure(artifacts, make_document, make_engine):
    document = make_document()
    artifacts._resolve(document.original_path).unlink()

    result = make_engine().run(document.id)

    assert result.status == DocumentStatus.NEEDS_REVIEW.value
    assert result.stage == ProcessingStage.PREPROCESS.value
    assert result.last_error_code == ErrorCode.STORAGE_FAILED.value


def test_unexpected_exception_marks_pipeline_failed(store, make_document, make_engine, monkeypatch):
    engine = make_engine()
    document = make_document()

    def broken_commit(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, 'commit_stage', broken_commit)
    result = engine.run(document.id)

    assert result.status == DocumentStatus.NEEDS_REVIEW.value
    assert result.last_error_code == ErrorCode.PIPELINE_FAILED.value
    assert result.lease_token is None
    assert audit_nodes(store, document.id)[-1] == 'PIPELINE'


def test_rejected_document_is_not_advanced(store, make_document, make_engine):
    preprocessor = StubPreprocessor()
    engine = make_engine(preprocessor=preprocessor)
    document = make_document()
    store.reject(document.id, 'company-1')

    result = engine.run(document.id)

    assert result.status == DocumentStatus.REJECTED.value
    assert preprocessor.calls == 0


def test_live_lease_blocks_a_second_run(store, make_document, make_engine):
    preprocessor = StubPreprocessor()
    engine = make_engine(preprocessor=preprocessor)
    document = make_document()
    store.claim(document.id, ttl_seconds=300)

    result = engine.run(document.id)

    assert result.stage == ProcessingStage.PREPROCESS.value
    assert preprocessor.calls == 0


def test_reject_during_run_halts_without_overwriting(store, make_document, make_engine):
    document = make_document()
    normalizer = StubNormalizer(side_effect=lambda: store.reject(document.id, 'company-1'))
    engine = make_engine(normalizer=normalizer)

    result = engine.run(document.id)

    assert result.status == DocumentStatus.REJECTED.value
    assert result.stage == ProcessingStage.LLM_NORMALIZE.value
    assert result.vendor_name is None
    rows = store.list_audit(document.id)
    assert rows[-1].node_name == 'LLM_NORMALIZE'
    assert rows[-1].result == 'halted'


def test_run_resumes_from_stored_stage(store, make_document, make_engine):
    preprocessor = StubPreprocessor()
    recognizer = StubRecognizer()
    normalizer = StubNormalizer()
    engine = make_engine(preprocessor=preprocessor, recognizer=recognizer, normalizer=normalizer)
    document = make_document()

    token = store.claim(document.id, ttl_seconds=300)
    store.commit_stage(document.id, token, ProcessingStage.PREPROCESS, {
        'stage': ProcessingStage.LLM_NORMALIZE,
        'raw_text': '도시가스 납부금액 31,000원 납기 2024.04.30',
        'extracted_json': ExtractionPayload(preprocess=PreprocessNote(doc_detected=True)).dump(),
    })
    store.release(document.id, token)

    result = engine.run(document.id)

    assert result.status == DocumentStatus.CONFIRMED.value
    assert preprocessor.calls == 0
    assert recognizer.calls == 0
    assert normalizer.calls == ['도시가스 납부금액 31,000원 납기 2024.04.30']


def test_stages_never_move_backwards(store, make_document, make_engine):
    engine = make_engine(template_matcher=StubMatcher(error=RuntimeError("boom")))
    document = make_document()
    engine.run(document.id)

    stages = [stage_index(row.details['stage']) for row in store.list_audit(document.id)]
    assert stages == sorted(stages)
    assert stages[-1] == stage_index(ProcessingStage.DONE)


def test_unknown_document_returns_none(make_engine):
    assert make_engine().run('does-not-exist') is None


def test_retry_does_not_keep_fields_from_the_previous_run(store, make_document, make_engine):
    document = make_document()
    first = make_engine(normalizer=StubNormalizer(extraction=good_extraction(confidence=0.5))).run(document.id)
    assert first.status == DocumentStatus.NEEDS_REVIEW.value
    assert first.amount_due == 52340

    store.reset_for_retry(document.id, 'company-1')
    failing = make_engine(recognizer=StubRecognizer(error=RecognitionError("All OCR engines failed", node='GENERAL_OCR')))
    rerun = failing.run(document.id)

    assert rerun.status == DocumentStatus.NEEDS_REVIEW.value
    assert rerun.last_error_code == ErrorCode.GENERAL_OCR_FAILED.value
    assert rerun.vendor_name is None
    assert rerun.amount_due is None
    assert rerun.due_date is None
    assert ExtractionPayload.load(rerun.extracted_json).fields.amount_due is None

    confirmed = ConfirmationNormalizer(store).confirm(document.id, 'company-1', {})
    assert confirmed.status == DocumentStatus.NEEDS_REVIEW.value
    assert confirmed.last_error_code == ErrorCode.INCOMPLETE_CONFIRMATION.value
