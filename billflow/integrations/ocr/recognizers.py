"""
General text recognition engines (Track B)

Each recognizer takes a PIL image and returns the recognized text.
"""
from typing import Any, Dict, List, Optional

from PIL import Image

from billflow.core.utils.error_handler import RecognitionError
from billflow.core.utils.logging_config import get_logger
from billflow.integrations.tools.ocr_tool_picker import OcrToolPicker, GENERAL_OCR

logger = get_logger(__name__)


class TesseractRecognizer:
    """OCR using Tesseract"""

    name = 'tesseract'

    def __init__(self, languages: str = 'kor+eng', psm: int = 6):
        self.languages = languages
        self.psm = psm

    def recognize(self, image: Image.Image) -> str:
        import pytesseract

        tesseract_config = f'--psm {self.psm}'
        text = pytesseract.image_to_string(image, lang=self.languages, config=tesseract_config)
        logger.info(f"Tesseract: Extracted {len(text)} characters")
        return text.strip()


class EasyOcrRecognizer:
    """OCR using EasyOCR (optional dependency, loaded on first use)"""

    name = 'easyocr'

    def __init__(self, languages: Optional[List[str]] = None, gpu: bool = False):
        self.languages = languages or ['ko', 'en']
        self.gpu = gpu
        self._reader = None

    def _get_reader(self):
        if self._reader is None:
            import easyocr

            logger.info("EasyOCR: Initializing reader...")
            self._reader = easyocr.Reader(self.languages, gpu=self.gpu)
        return self._reader

    def recognize(self, image: Image.Image) -> str:
        import numpy as np

        results = self._get_reader().readtext(np.array(image.convert('RGB')), detail=1)
        text = "\n".join([text for (bbox, text, conf) in results])
        logger.info(f"EasyOCR: Extracted {len(text)} characters from {len(results)} regions")
        return text.strip()


ENGINES = {
    TesseractRecognizer.name: TesseractRecognizer,
    EasyOcrRecognizer.name: EasyOcrRecognizer,
}


def build_engine(name: str, engine_config: Optional[Dict[str, Any]] = None):
    """Instantiate an engine from its tools.yaml entry"""
    engine_config = dict(engine_config or {})
    if name not in ENGINES:
        raise ValueError(f"Unknown OCR engine '{name}'")
    if name == TesseractRecognizer.name:
        languages = engine_config.get('languages', 'kor+eng')
        if isinstance(languages, list):
            languages = '+'.join(languages)
        return TesseractRecognizer(languages=languages, psm=int(engine_config.get('psm', 6)))
    return EasyOcrRecognizer(
        languages=engine_config.get('languages'),
        gpu=bool(engine_config.get('gpu', False))
    )


class FallbackRecognizer:
    """
    Tries engines in order and returns the first non-empty text

    An engine that raises or returns nothing hands over to the next one.
    RecognitionError is raised only when every engine failed.
    """

    def __init__(self, engines: List[Any]):
        if not engines:
            raise ValueError("FallbackRecognizer needs at least one engine")
        self.engines = engines

    @classmethod
    def from_picker(cls, picker: OcrToolPicker, languages: Optional[str] = None) -> 'FallbackRecognizer':
        """
        Build the chain from the tool pool

        Args:
            picker: Tool picker over tools.yaml
            languages: Overrides the Tesseract language string when given
        """
        engines = []
        for tool in picker.ranked(GENERAL_OCR):
            engine_config = tool['config']
            if languages and tool['name'] == TesseractRecognizer.name:
                engine_config = {**engine_config, 'languages': languages}
            engines.append(build_engine(tool['name'], engine_config))
        logger.info(f"General OCR engines: {[engine.name for engine in engines]}")
        return cls(engines)

    def recognize(self, image: Image.Image) -> str:
        errors = []
        for engine in self.engines:
            name = getattr(engine, 'name', type(engine).__name__)
            try:
                text = engine.recognize(image)
            except Exception as e:
                logger.warning(f"OCR engine {name} failed: {e}")
                errors.append(f"{name}: {e}")
                continue
            if text and text.strip():
                return text
            logger.info(f"OCR engine {name} returned no text")
            errors.append(f"{name}: no text")

        raise RecognitionError(f"All OCR engines failed ({'; '.join(errors)})", node='GENERAL_OCR')
