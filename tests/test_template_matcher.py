import pytest
from PIL import Image

from billflow.core.models.state import BillType
from billflow.core.utils.error_handler import TemplateRecognitionError
from billflow.integrations.ocr.template_matcher import TemplateMatcher, VendorTemplate, crop_fraction

# Boxes are chosen so that every crop of a 1000x1000 page has a distinct size
TEMPLATES = [
    {
        'id': 'kepco_test',
        'vendor_name': '한국전력공사',
        'bill_type': 'ELECTRICITY',
        'anchor_region': [0.0, 0.0, 1.0, 0.2],
        'anchors': ['한국전력', '전기요금'],
        'fields': {
            'amount_due': {'box': [0.0, 0.3, 0.5, 0.4], 'type': 'amount'},
            'due_date': {'box': [0.0, 0.5, 0.3, 0.6], 'type': 'date'},
            'customer_no': {'box': [0.0, 0.7, 0.2, 0.75], 'type': 'text'},
        },
    },
]


class SizeKeyedOcr:
    """Returns canned text for each crop, keyed on the crop size"""

    def __init__(self, texts):
        self.texts = texts
        self.calls = []

    def __call__(self, image):
        self.calls.append(image.size)
        return self.texts.get(image.size, '')


@pytest.fixture
def page():
    return Image.new('RGB', (1000, 1000), 'white')


def kepco_texts(overrides=None):
    texts = {
        (1000, 200): '한국 전력공사\n전기요금 청구서',
        (500, 100): '52,340 원',
        (300, 100): '2024. 03. 25',
        (200, 50): ' 0123456789 ',
    }
    texts.update(overrides or {})
    return texts


def test_matching_layout_extracts_fields(page):
    matcher = TemplateMatcher(TEMPLATES, ocr=SizeKeyedOcr(kepco_texts()), min_fields=3)

    match = matcher.match_template(page)

    assert match.template_id == 'kepco_test'
    assert match.match_score == 1.0
    assert match.fields.vendor_name == '한국전력공사'
    assert match.fields.bill_type == BillType.ELECTRICITY
    assert match.fields.amount_due == 52340
    assert match.fields.due_date == '2024-03-25'
    assert match.fields.customer_no == '0123456789'
    assert match.field_text['amount_due'] == '52,340 원'


def test_partial_anchor_match_below_threshold(page):
    ocr = SizeKeyedOcr(kepco_texts({(1000, 200): '전기요금'}))
    matcher = TemplateMatcher(TEMPLATES, ocr=ocr, match_threshold=0.6)

    assert matcher.match_template(page) is None
    # Field boxes are never read when anchors do not match
    assert ocr.calls == [(1000, 200)]


def test_too_few_parsed_fields_rejects_match(page):
    ocr = SizeKeyedOcr(kepco_texts({(500, 100): '-', (300, 100): 'unreadable'}))
    matcher = TemplateMatcher(TEMPLATES, ocr=ocr, min_fields=2)

    assert matcher.match_template(page) is None


def test_negative_amount_is_not_counted(page):
    ocr = SizeKeyedOcr(kepco_texts({(500, 100): '-52,340'}))
    matcher = TemplateMatcher(TEMPLATES, ocr=ocr, min_fields=3)

    assert matcher.match_template(page) is None


def test_best_anchor_score_wins(page):
    other = dict(TEMPLATES[0], id='generic_power', anchors=['전기요금', '청구서', '가스'])
    ocr = SizeKeyedOcr(kepco_texts())
    matcher = TemplateMatcher([other, TEMPLATES[0]], ocr=ocr, match_threshold=0.5)

    match = matcher.match_template(page)

    assert match.template_id == 'kepco_test'
    # The shared anchor region is read once
    assert ocr.calls.count((1000, 200)) == 1


def test_no_templates_means_no_match(page):
    assert TemplateMatcher([], ocr=SizeKeyedOcr({})).match_template(page) is None


def test_template_validation():
    with pytest.raises(ValueError):
        VendorTemplate({'id': 'bad', 'fields': {'total': {'box': [0, 0, 1, 1]}}})
    with pytest.raises(ValueError):
        VendorTemplate({'id': 'bad', 'fields': {'amount_due': {'box': [0, 0, 1, 1], 'type': 'money'}}})
    assert VendorTemplate({'id': 'empty'}).anchor_score('anything') == 0.0


def test_crop_fraction(page):
    assert crop_fraction(page, (0.1, 0.2, 0.6, 0.4)).size == (500, 200)
    with pytest.raises(ValueError):
        crop_fraction(page, (0.5, 0.5, 0.5, 0.9))


def test_from_config_reads_template_list(page):
    matcher = TemplateMatcher.from_config({'templates': TEMPLATES}, ocr=SizeKeyedOcr(kepco_texts()))
    assert [template.id for template in matcher.templates] == ['kepco_test']


def test_ocr_engine_errors_are_wrapped(page):
    def broken_ocr(image):
        raise OSError("tesseract is not installed")

    matcher = TemplateMatcher(TEMPLATES, ocr=broken_ocr)
    with pytest.raises(TemplateRecognitionError) as excinfo:
        matcher.match_template(page)
    assert excinfo.value.node == 'TEMPLATE_OCR'
    assert 'tesseract is not installed' in str(excinfo.value)
