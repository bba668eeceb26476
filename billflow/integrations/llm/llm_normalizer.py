"""
Language model normalization of raw OCR text (Track B)

The model answers with a fixed JSON schema. Its answer is treated as a
suggestion: every value goes through the same parsers as human input and
anything it could not pin down is listed as an ambiguity.
"""
import json
from typing import Any, Dict, List, Optional

from openai import OpenAI, APIConnectionError, APITimeoutError, RateLimitError, InternalServerError

from billflow.core.models.extraction import (
    Evidence,
    ExtractedFields,
    LlmExtraction,
    build_details,
)
from billflow.core.models.state import BillType
from billflow.core.utils.error_handler import NormalizationError, RetryPolicy, with_retry
from billflow.core.utils.helpers import clean_text, parse_amount, parse_bill_type, parse_date
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.5
TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)

NULLABLE_STRING = {'type': ['string', 'null']}
NULLABLE_NUMBER = {'type': ['number', 'null']}

BILL_SCHEMA = {
    'name': 'utility_bill',
    'strict': True,
    'schema': {
        'type': 'object',
        'additionalProperties': False,
        'properties': {
            'bill_type': {'type': 'string', 'enum': [bill_type.value for bill_type in BillType]},
            'vendor_name': NULLABLE_STRING,
            'amount_due': NULLABLE_NUMBER,
            'due_date': NULLABLE_STRING,
            'billing_period_start': NULLABLE_STRING,
            'billing_period_end': NULLABLE_STRING,
            'customer_no': NULLABLE_STRING,
            'payment_account': NULLABLE_STRING,
            'details': {
                'type': 'object',
                'additionalProperties': False,
                'properties': {
                    'usage': NULLABLE_NUMBER,
                    'usage_unit': NULLABLE_STRING,
                    'service_number': NULLABLE_STRING,
                    'tax_item': NULLABLE_STRING,
                },
                'required': ['usage', 'usage_unit', 'service_number', 'tax_item'],
            },
            'evidence': {
                'type': 'object',
                'additionalProperties': False,
                'properties': {
                    'amount_text': NULLABLE_STRING,
                    'due_date_text': NULLABLE_STRING,
                    'vendor_text': NULLABLE_STRING,
                },
                'required': ['amount_text', 'due_date_text', 'vendor_text'],
            },
            'confidence': {'type': 'number', 'minimum': 0, 'maximum': 1},
        },
        'required': [
            'bill_type',
            'vendor_name',
            'amount_due',
            'due_date',
            'billing_period_start',
            'billing_period_end',
            'customer_no',
            'payment_account',
            'details',
            'evidence',
            'confidence',
        ],
    },
}

SYSTEM_PROMPT = (
    "You extract Korean utility bill fields from OCR text. "
    "Follow the schema strictly. Use null for anything you cannot find. "
    "If uncertain, lower confidence."
)

EXTRACTION_RULES = [
    "Structure the utility bill in the OCR text below. Rules:",
    "- If there are several amounts, choose the one near '납부할 금액', '납부금액', '당월' or '이번달' as amount_due",
    "- Never choose amounts labelled '미납', '연체' or '가산금' as amount_due",
    "- If there are several dates, choose the one near '납부기한', '납기' or '까지' as due_date",
    "- Write dates as YYYY-MM-DD",
    "- Quote the exact source text you used for amount, due date and vendor in evidence",
]


def _present(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and not value.strip())


def _text_value(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    return clean_text(value)


def parse_llm_response(content: str) -> LlmExtraction:
    """
    Parse and normalize a model answer

    Args:
        content: JSON text returned by the model

    Returns:
        LlmExtraction with normalized fields and the list of ambiguities

    Raises:
        NormalizationError: If content is not a JSON object
    """
    try:
        data = json.loads(content)
    except (TypeError, ValueError) as e:
        raise NormalizationError(f"LLM returned invalid JSON: {e}", node='LLM_NORMALIZE') from e
    if not isinstance(data, dict):
        raise NormalizationError("LLM returned a non-object JSON value", node='LLM_NORMALIZE')

    ambiguities: List[str] = []

    def parsed(key: str, parser, required: bool = False):
        raw = data.get(key)
        if not _present(raw):
            if required:
                ambiguities.append(key)
            return None
        value = parser(raw)
        if value is None:
            ambiguities.append(key)
        return value

    amount_due = parsed('amount_due', parse_amount, required=True)
    if amount_due is not None and amount_due < 0:
        ambiguities.append('amount_due')
        amount_due = None

    bill_type = parse_bill_type(data.get('bill_type'))
    if bill_type is None:
        ambiguities.append('bill_type')
        bill_type = BillType.ETC

    fields = ExtractedFields(
        vendor_name=parsed('vendor_name', clean_text, required=True),
        bill_type=bill_type,
        amount_due=amount_due,
        due_date=parsed('due_date', parse_date, required=True),
        billing_period_start=parsed('billing_period_start', parse_date),
        billing_period_end=parsed('billing_period_end', parse_date),
        customer_no=parsed('customer_no', _text_value),
        payment_account=parsed('payment_account', _text_value),
    )

    raw_evidence = data.get('evidence') if isinstance(data.get('evidence'), dict) else {}
    evidence = Evidence(
        amount_text=clean_text(raw_evidence.get('amount_text')),
        due_date_text=clean_text(raw_evidence.get('due_date_text')),
        vendor_text=clean_text(raw_evidence.get('vendor_text')),
    )
    if evidence.amount_text is None:
        ambiguities.append('evidence.amount_text')
    if evidence.due_date_text is None:
        ambiguities.append('evidence.due_date_text')

    raw_confidence = data.get('confidence')
    if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool):
        llm_confidence = min(1.0, max(0.0, float(raw_confidence)))
    else:
        ambiguities.append('confidence')
        llm_confidence = DEFAULT_CONFIDENCE

    raw_details = data.get('details') if isinstance(data.get('details'), dict) else {}
    try:
        details = build_details(bill_type, raw_details)
    except ValueError as e:
        logger.warning(f"Ignoring malformed bill details: {e}")
        details = build_details(bill_type)

    # Keep first occurrence order
    unique_ambiguities = list(dict.fromkeys(ambiguities))

    return LlmExtraction(
        fields=fields,
        details=details,
        evidence=evidence,
        llm_confidence=llm_confidence,
        ambiguities=unique_ambiguities,
    )


class LlmNormalizer:
    """
    Calls an OpenAI-compatible chat completion endpoint (OpenRouter by default)

    The client is created lazily so the service can start without a key;
    normalization then fails with LLM_FAILED.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = 'google/gemini-2.5-flash',
        base_url: Optional[str] = 'https://openrouter.ai/api/v1',
        site_url: Optional[str] = None,
        app_name: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[Any] = None
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.extra_headers: Dict[str, str] = {}
        if site_url:
            self.extra_headers['HTTP-Referer'] = site_url
        if app_name:
            self.extra_headers['X-Title'] = app_name
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise NormalizationError("LLM API key is missing", node='LLM_NORMALIZE', recoverable=False)
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)
            logger.info(f"LLM normalizer initialized with model {self.model}")
        return self._client

    def build_messages(self, raw_text: str) -> List[Dict[str, str]]:
        user_payload = json.dumps({'ocr_text': raw_text}, ensure_ascii=False, indent=2)
        return [
            {'role': 'system', 'content': SYSTEM_PROMPT},
            {'role': 'user', 'content': "\n".join(EXTRACTION_RULES + ["", "OCR input:", user_payload])},
        ]

    def normalize(self, raw_text: str) -> LlmExtraction:
        """
        Extract structured bill fields from raw OCR text

        Raises:
            NormalizationError: If the call fails or the answer is unusable
        """
        logger.info(f"Normalizing {len(raw_text or '')} characters of OCR text with {self.model}")
        try:
            content = self._complete(self.build_messages(raw_text or ''))
        except NormalizationError:
            raise
        except Exception as e:
            raise NormalizationError(f"LLM request failed: {e}", node='LLM_NORMALIZE') from e

        extraction = parse_llm_response(content)
        logger.info(
            f"LLM extraction: vendor={extraction.fields.vendor_name}, amount={extraction.fields.amount_due}, "
            f"confidence={extraction.llm_confidence:.2f}, ambiguities={extraction.ambiguities}"
        )
        return extraction

    @with_retry(retry_policy=RetryPolicy(max_retries=2, backoff_seconds=1.0), exceptions=TRANSIENT_ERRORS)
    def _complete(self, messages: List[Dict[str, str]]) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            response_format={'type': 'json_schema', 'json_schema': BILL_SCHEMA},
            temperature=0,
            extra_headers=self.extra_headers or None,
        )
        if not response.choices:
            raise NormalizationError("LLM returned no choices", node='LLM_NORMALIZE')
        content = response.choices[0].message.content
        if not isinstance(content, str) or not content.strip():
            raise NormalizationError("LLM returned empty content", node='LLM_NORMALIZE')
        return content
