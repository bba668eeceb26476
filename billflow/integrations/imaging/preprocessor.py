"""
Image preprocessing for uploaded bills

Produces three PNG renditions of the page:
- scan: oriented, first PDF page, perspective-corrected to the detected document
- track_a: lightly enhanced color image for template recognition
- track_b: adaptively binarized grayscale image for general OCR

Pillow handles decoding and encoding; detection and enhancement run on
numpy arrays with OpenCV.
"""
import io
from typing import Optional

import cv2
import numpy as np
from PIL import Image, ImageOps
from pydantic import BaseModel

from billflow.core.utils.error_handler import PreprocessError
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

DETECTION_MAX_DIMENSION = 1000
MIN_DOCUMENT_AREA_RATIO = 0.1
CANNY_LOW = 75
CANNY_HIGH = 200
APPROX_EPSILON_RATIO = 0.02
ADAPTIVE_BLOCK_SIZE = 35
ADAPTIVE_C = 10
PDF_DPI = 200

OUTLINE_NOT_FOUND = "Document outline not found; using the full image"


class PreprocessResult(BaseModel):
    """PNG renditions of one bill plus the outline detection outcome"""
    scan_png: bytes
    track_a_png: bytes
    track_b_png: bytes
    doc_detected: bool
    note: Optional[str] = None


def to_png(pixels: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format='PNG')
    return buffer.getvalue()


def is_pdf(data: bytes, content_type: Optional[str] = None) -> bool:
    return content_type == 'application/pdf' or data[:5] == b'%PDF-'


def order_corners(points: np.ndarray) -> np.ndarray:
    """Order four corners as top-left, top-right, bottom-right, bottom-left"""
    points = points.reshape(4, 2).astype(np.float32)
    sums = points.sum(axis=1)
    diffs = np.diff(points, axis=1).ravel()  # y - x
    return np.array([
        points[np.argmin(sums)],
        points[np.argmin(diffs)],
        points[np.argmax(sums)],
        points[np.argmax(diffs)],
    ], dtype=np.float32)


def warp_document(pixels: np.ndarray, corners: np.ndarray) -> np.ndarray:
    """Perspective-correct the quadrilateral given by corners into a flat page"""
    tl, tr, br, bl = order_corners(corners)
    width = int(round(max(np.linalg.norm(br - bl), np.linalg.norm(tr - tl))))
    height = int(round(max(np.linalg.norm(tr - br), np.linalg.norm(tl - bl))))
    width, height = max(1, width), max(1, height)

    target = np.array([
        [0, 0],
        [width - 1, 0],
        [width - 1, height - 1],
        [0, height - 1],
    ], dtype=np.float32)
    transform = cv2.getPerspectiveTransform(np.array([tl, tr, br, bl]), target)
    return cv2.warpPerspective(pixels, transform, (width, height))


class ImagePreprocessor:
    """OpenCV document detection, perspective correction and binarization"""

    def __init__(self, pdf_dpi: int = PDF_DPI, min_area_ratio: float = MIN_DOCUMENT_AREA_RATIO):
        self.pdf_dpi = pdf_dpi
        self.min_area_ratio = min_area_ratio

    def process(self, data: bytes, content_type: Optional[str] = None) -> PreprocessResult:
        """
        Preprocess an uploaded bill

        Args:
            data: Original file bytes (image or PDF)
            content_type: MIME type reported at upload

        Returns:
            PreprocessResult with PNG bytes for scan, track_a and track_b

        Raises:
            PreprocessError: If the file cannot be decoded
        """
        pixels = self.load_image(data, content_type)
        height, width = pixels.shape[:2]

        corners = self.detect_document(pixels)
        if corners is not None:
            scan = warp_document(pixels, corners)
            doc_detected = True
            note = None
        else:
            scan = pixels
            doc_detected = False
            note = OUTLINE_NOT_FOUND

        logger.info(f"Preprocessed {width}x{height} page, document detected: {doc_detected}")
        return PreprocessResult(
            scan_png=to_png(scan),
            track_a_png=to_png(self.enhance_for_template(scan)),
            track_b_png=to_png(self.binarize_for_ocr(scan)),
            doc_detected=doc_detected,
            note=note,
        )

    def load_image(self, data: bytes, content_type: Optional[str] = None) -> np.ndarray:
        """Decode bytes into an upright RGB array (first page for PDFs)"""
        if not data:
            raise PreprocessError("Original file is empty", node='PREPROCESS')
        try:
            if is_pdf(data, content_type):
                from pdf2image import convert_from_bytes

                pages = convert_from_bytes(data, dpi=self.pdf_dpi, first_page=1, last_page=1)
                if not pages:
                    raise PreprocessError("PDF has no pages", node='PREPROCESS')
                image = pages[0]
            else:
                image = Image.open(io.BytesIO(data))
                image.load()
                image = ImageOps.exif_transpose(image)
        except PreprocessError:
            raise
        except Exception as e:
            raise PreprocessError(f"Could not decode image: {e}", node='PREPROCESS') from e
        return np.array(image.convert('RGB'))

    def detect_document(self, pixels: np.ndarray) -> Optional[np.ndarray]:
        """
        Locate the bill on the photo

        Canny edges of a downscaled copy are closed with a small dilation,
        then the largest convex four-corner contour covering at least
        min_area_ratio of the frame is taken as the page outline.

        Returns:
            Four corner points in full-resolution pixels, or None when not found
        """
        height, width = pixels.shape[:2]
        scale = min(1.0, DETECTION_MAX_DIMENSION / float(max(width, height)))
        gray = cv2.cvtColor(pixels, cv2.COLOR_RGB2GRAY)
        if scale < 1.0:
            gray = cv2.resize(
                gray,
                (max(1, int(width * scale)), max(1, int(height * scale))),
                interpolation=cv2.INTER_AREA
            )

        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = cv2.Canny(blurred, CANNY_LOW, CANNY_HIGH)
        edges = cv2.dilate(edges, np.ones((3, 3), np.uint8), iterations=2)

        contours, _ = cv2.findContours(edges, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)

        min_area = gray.shape[0] * gray.shape[1] * self.min_area_ratio
        best = None
        best_area = 0.0
        for contour in contours:
            area = cv2.contourArea(contour)
            if area < min_area or area <= best_area:
                continue
            approx = cv2.approxPolyDP(contour, APPROX_EPSILON_RATIO * cv2.arcLength(contour, True), True)
            if len(approx) == 4 and cv2.isContourConvex(approx):
                best = approx
                best_area = area

        if best is None:
            logger.debug(f"No document quadrilateral among {len(contours)} contours")
            return None

        return best.reshape(4, 2).astype(np.float32) / scale

    def enhance_for_template(self, pixels: np.ndarray) -> np.ndarray:
        hsv = cv2.cvtColor(pixels, cv2.COLOR_RGB2HSV).astype(np.float32)
        hsv[..., 1] *= 1.05
        hsv[..., 2] *= 1.03
        enhanced = cv2.cvtColor(np.clip(hsv, 0, 255).astype(np.uint8), cv2.COLOR_HSV2RGB)
        enhanced = cv2.medianBlur(enhanced, 3)
        sharpen = np.array([[0, -1, 0], [-1, 5, -1], [0, -1, 0]], dtype=np.float32)
        return cv2.filter2D(enhanced, -1, sharpen)

    def binarize_for_ocr(self, pixels: np.ndarray) -> np.ndarray:
        gray = cv2.cvtColor(pixels, cv2.COLOR_RGB2GRAY)
        denoised = cv2.bilateralFilter(gray, 9, 75, 75)
        return cv2.adaptiveThreshold(
            denoised, 255,
            cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
            cv2.THRESH_BINARY,
            ADAPTIVE_BLOCK_SIZE,
            ADAPTIVE_C
        )
