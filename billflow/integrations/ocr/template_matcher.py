"""
Vendor template recognition (Track A)

A template names the vendor, the bill type, an anchor region with
keywords that identify the layout, and fractional boxes for each field.
Only the box contents are OCR'd, so a matching layout yields clean
values without going through the language model.
"""
from typing import Any, Callable, Dict, List, Optional, Tuple

from PIL import Image

from billflow.core.models.extraction import ExtractedFields, TemplateMatch
from billflow.core.models.state import DOCUMENT_FIELDS
from billflow.core.utils.error_handler import TemplateRecognitionError
from billflow.core.utils.helpers import clean_text, parse_amount, parse_bill_type, parse_date
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

Box = Tuple[float, float, float, float]

FIELD_PARSERS = {
    'amount': parse_amount,
    'date': parse_date,
    'text': clean_text,
}


def tesseract_ocr(languages: str = 'kor+eng') -> Callable[[Image.Image], str]:
    """Region OCR function backed by Tesseract (single block mode)"""
    def _ocr(image: Image.Image) -> str:
        import pytesseract

        return pytesseract.image_to_string(image, lang=languages, config='--psm 6')
    return _ocr


def crop_fraction(image: Image.Image, box: Box) -> Image.Image:
    """Crop a [left, top, right, bottom] box given as fractions of the image size"""
    width, height = image.size
    left, top, right, bottom = box
    pixels = (
        int(round(max(0.0, left) * width)),
        int(round(max(0.0, top) * height)),
        int(round(min(1.0, right) * width)),
        int(round(min(1.0, bottom) * height)),
    )
    if pixels[2] <= pixels[0] or pixels[3] <= pixels[1]:
        raise ValueError(f"Empty template box {box}")
    return image.crop(pixels)


def _squash(text: str) -> str:
    return ''.join(text.split()).lower()


class VendorTemplate:
    """One vendor layout loaded from templates.yaml"""

    def __init__(self, spec: Dict[str, Any]):
        self.id = spec['id']
        self.vendor_name = clean_text(spec.get('vendor_name'))
        self.bill_type = parse_bill_type(spec.get('bill_type'))
        self.anchor_region: Box = tuple(spec.get('anchor_region') or (0.0, 0.0, 1.0, 0.25))
        self.anchors: List[str] = [str(anchor) for anchor in spec.get('anchors') or []]
        self.fields: Dict[str, Dict[str, Any]] = {}

        for field_name, field_spec in (spec.get('fields') or {}).items():
            if field_name not in DOCUMENT_FIELDS:
                raise ValueError(f"Template {self.id}: unknown field '{field_name}'")
            field_type = field_spec.get('type', 'text')
            if field_type not in FIELD_PARSERS:
                raise ValueError(f"Template {self.id}: unknown field type '{field_type}'")
            self.fields[field_name] = {'box': tuple(field_spec['box']), 'type': field_type}

    def anchor_score(self, anchor_text: str) -> float:
        """Fraction of anchor keywords present in the anchor region text"""
        if not self.anchors:
            return 0.0
        haystack = _squash(anchor_text)
        found = sum(1 for anchor in self.anchors if _squash(anchor) in haystack)
        return found / len(self.anchors)


class TemplateMatcher:
    """
    Matches a preprocessed bill against configured vendor templates

    Args:
        templates: Template definitions (the 'templates' list of templates.yaml)
        ocr: Function that OCRs a cropped region
        match_threshold: Minimum anchor score for a template to be considered
        min_fields: Minimum number of box fields that must parse
    """

    def __init__(
        self,
        templates: List[Dict[str, Any]],
        ocr: Optional[Callable[[Image.Image], str]] = None,
        match_threshold: float = 0.6,
        min_fields: int = 3
    ):
        self.templates = [VendorTemplate(spec) for spec in templates or []]
        self.ocr = ocr or tesseract_ocr()
        self.match_threshold = match_threshold
        self.min_fields = min_fields

    @classmethod
    def from_config(cls, templates_config: Dict[str, Any], **kwargs) -> 'TemplateMatcher':
        return cls(templates_config.get('templates') or [], **kwargs)

    def match_template(self, image: Image.Image) -> Optional[TemplateMatch]:
        """
        Find the best confident template match for an image

        Returns:
            TemplateMatch, or None when no template clears both the anchor
            threshold and the populated-field minimum
        """
        if not self.templates:
            return None

        region_text: Dict[Box, str] = {}
        scored = []
        for template in self.templates:
            if template.anchor_region not in region_text:
                region_text[template.anchor_region] = self._read(image, template.anchor_region)
            score = template.anchor_score(region_text[template.anchor_region])
            logger.debug(f"Template {template.id} anchor score {score:.2f}")
            if score >= self.match_threshold:
                scored.append((score, template))

        if not scored:
            logger.info("No template anchors matched")
            return None

        # Highest anchor score first; ties keep file order
        scored.sort(key=lambda item: item[0], reverse=True)
        for score, template in scored:
            match = self._extract(template, image, score)
            if match is not None:
                return match
        return None

    def _read(self, image: Image.Image, box: Box) -> str:
        region = crop_fraction(image, box)
        try:
            return self.ocr(region) or ''
        except Exception as e:
            raise TemplateRecognitionError(f"Template OCR failed: {e}", node='TEMPLATE_OCR') from e

    def _extract(self, template: VendorTemplate, image: Image.Image, score: float) -> Optional[TemplateMatch]:
        values: Dict[str, Any] = {}
        field_text: Dict[str, Optional[str]] = {}

        for field_name, field_spec in template.fields.items():
            text = self._read(image, field_spec["box"])
            field_text[field_name] = clean_text(text)
            value = FIELD_PARSERS[field_spec['type']](text)
            if field_spec['type'] == 'amount' and value is not None and value < 0:
                value = None
            if value is not None:
                values[field_name] = value

        if len(values) < self.min_fields:
            logger.info(
                f"Template {template.id} matched anchors ({score:.2f}) but only "
                f"{len(values)}/{self.min_fields} fields parsed"
            )
            return None

        fields = ExtractedFields(**{
            'vendor_name': template.vendor_name,
            'bill_type': template.bill_type,
            **values
        })
        logger.info(f"Template {template.id} matched with score {score:.2f} ({len(values)} fields)")
        return TemplateMatch(
            template_id=template.id,
            match_score=score,
            fields=fields,
            field_text=field_text,
        )
