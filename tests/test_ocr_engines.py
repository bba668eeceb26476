import pytest
from PIL import Image

from billflow.core.utils.error_handler import RecognitionError
from billflow.integrations.ocr.recognizers import (
    EasyOcrRecognizer,
    FallbackRecognizer,
    TesseractRecognizer,
    build_engine,
)
from billflow.integrations.tools.ocr_tool_picker import GENERAL_OCR, OcrToolPicker

TOOLS = {
    'tool_pools': {
        'general_ocr': [
            {'name': 'easyocr', 'priority': 2, 'config': {'languages': ['ko', 'en']}},
            {'name': 'tesseract', 'priority': 1, 'config': {'languages': 'kor+eng'}},
        ],
    },
    'selection_strategy': {'fallback': True},
}


class ScriptedEngine:
    def __init__(self, name, text=None, error=None):
        self.name = name
        self.text = text
        self.error = error
        self.calls = 0

    def recognize(self, image):
        self.calls += 1
        if self.error:
            raise self.error
        return self.text


@pytest.fixture
def image():
    return Image.new('L', (20, 20), 255)


def test_picker_orders_by_priority():
    picker = OcrToolPicker(TOOLS)
    ranked = picker.ranked(GENERAL_OCR)
    assert [tool['name'] for tool in ranked] == ['tesseract', 'easyocr']
    assert ranked[0] == {'name': 'tesseract', 'config': {'languages': 'kor+eng'}, 'priority': 1}


def test_picker_without_fallback_offers_one_engine():
    picker = OcrToolPicker(dict(TOOLS, selection_strategy={'fallback': False}))
    assert [tool['name'] for tool in picker.ranked(GENERAL_OCR)] == ['tesseract']


def test_picker_unknown_capability_has_no_engines():
    assert OcrToolPicker(TOOLS).ranked('handwriting') == []


def test_picker_resolves_env_references(monkeypatch):
    monkeypatch.setenv('OCR_TEST_LANGS', 'eng')
    picker = OcrToolPicker({'tool_pools': {'general_ocr': [
        {'name': 'tesseract', 'config': {'languages_env': 'OCR_TEST_LANGS', 'psm': 4}},
    ]}})
    assert picker.ranked()[0]['config'] == {'languages': 'eng', 'psm': 4}


def test_bundled_tools_config_loads():
    picker = OcrToolPicker()
    assert [tool['name'] for tool in picker.ranked(GENERAL_OCR)] == ['tesseract', 'easyocr']


def test_build_engine_from_config():
    tesseract = build_engine('tesseract', {'languages': ['kor', 'eng'], 'psm': 4})
    assert isinstance(tesseract, TesseractRecognizer)
    assert tesseract.languages == 'kor+eng'
    assert tesseract.psm == 4

    easy = build_engine('easyocr', {'languages': ['ko'], 'gpu': False})
    assert isinstance(easy, EasyOcrRecognizer)
    assert easy.languages == ['ko']

    with pytest.raises(ValueError):
        build_engine('abbyy')


def test_fallback_chain_from_picker_overrides_languages():
    recognizer = FallbackRecognizer.from_picker(OcrToolPicker(TOOLS), languages='eng')
    assert [engine.name for engine in recognizer.engines] == ['tesseract', 'easyocr']
    assert recognizer.engines[0].languages == 'eng'


def test_fallback_uses_next_engine_on_error_or_empty_text(image):
    broken = ScriptedEngine('tesseract', error=RuntimeError("tesseract not found"))
    empty = ScriptedEngine('blank', text="   ")
    working = ScriptedEngine('easyocr', text="납부할 금액 52,340원")

    assert FallbackRecognizer([broken, empty, working]).recognize(image) == "납부할 금액 52,340원"
    assert (broken.calls, empty.calls, working.calls) == (1, 1, 1)


def test_first_engine_with_text_wins(image):
    first = ScriptedEngine('tesseract', text="text")
    second = ScriptedEngine('easyocr', text="other")
    assert FallbackRecognizer([first, second]).recognize(image) == "text"
    assert second.calls == 0


def test_all_engines_failing_raises_recognition_error(image):
    recognizer = FallbackRecognizer([
        ScriptedEngine('tesseract', error=RuntimeError("missing binary")),
        ScriptedEngine('easyocr', text=""),
    ])
    with pytest.raises(RecognitionError) as excinfo:
        recognizer.recognize(image)
    assert 'missing binary' in excinfo.value.message
    assert 'easyocr: no text' in excinfo.value.message


def test_fallback_needs_an_engine():
    with pytest.raises(ValueError):
        FallbackRecognizer([])
