"""
Configuration loader for the Utility Bill Processing pipeline
"""
import os
import yaml
from dotenv import load_dotenv
from pathlib import Path

# Load environment variables
load_dotenv()


class Config:
    """Application configuration"""

    # Database
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///./utility_bills.db')

    # Artifact storage
    ARTIFACT_ROOT = os.getenv('ARTIFACT_ROOT', './data/artifacts')
    ARTIFACT_URL_BASE = os.getenv('ARTIFACT_URL_BASE', 'http://localhost:8000/api/artifacts')
    ARTIFACT_SIGNING_SECRET = os.getenv('ARTIFACT_SIGNING_SECRET', '')
    SIGNED_URL_TTL_SECONDS = int(os.getenv('SIGNED_URL_TTL_SECONDS', '3600'))

    # Language model (any OpenAI-compatible endpoint, OpenRouter by default)
    LLM_API_KEY = os.getenv('OPENROUTER_API_KEY') or os.getenv('OPENAI_API_KEY')
    LLM_BASE_URL = os.getenv('LLM_BASE_URL', 'https://openrouter.ai/api/v1')
    LLM_MODEL = os.getenv('LLM_MODEL', 'google/gemini-2.5-flash')
    LLM_SITE_URL = os.getenv('OPENROUTER_SITE_URL')
    LLM_APP_NAME = os.getenv('OPENROUTER_APP_NAME')
    LLM_TIMEOUT_SECONDS = float(os.getenv('LLM_TIMEOUT_SECONDS', '60'))

    # OCR
    OCR_LANGUAGES = os.getenv('OCR_LANGUAGES', 'kor+eng')
    TEMPLATE_MATCH_THRESHOLD = float(os.getenv('TEMPLATE_MATCH_THRESHOLD', '0.6'))
    TEMPLATE_MIN_FIELDS = int(os.getenv('TEMPLATE_MIN_FIELDS', '3'))
    TEMPLATES_ENABLED = os.getenv('TEMPLATES_ENABLED', 'True').lower() == 'true'

    # Validation
    CONFIDENCE_THRESHOLD = float(os.getenv('CONFIDENCE_THRESHOLD', '0.85'))

    # Pipeline execution
    PIPELINE_WORKERS = int(os.getenv('PIPELINE_WORKERS', '2'))
    LEASE_SECONDS = int(os.getenv('LEASE_SECONDS', '300'))

    # Recovery sweep
    SWEEP_DEFAULT_LIMIT = int(os.getenv('SWEEP_DEFAULT_LIMIT', '3'))
    SWEEP_MAX_LIMIT = int(os.getenv('SWEEP_MAX_LIMIT', '10'))
    SWEEP_TIME_BUDGET_SECONDS = float(os.getenv('SWEEP_TIME_BUDGET_SECONDS', '50'))
    SWEEP_INTERVAL_SECONDS = float(os.getenv('SWEEP_INTERVAL_SECONDS', '0'))
    CRON_SECRET = os.getenv('CRON_SECRET', '')

    # Application Settings
    APP_HOST = os.getenv('APP_HOST', '0.0.0.0')
    APP_PORT = int(os.getenv('APP_PORT', '8000'))
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FILE = os.getenv('LOG_FILE')

    @classmethod
    def load_tools_config(cls):
        """Load OCR tool pool configuration from YAML"""
        config_path = Path(__file__).parent / 'tools.yaml'
        if config_path.exists():
            with open(config_path, 'r') as f:
                return yaml.safe_load(f)
        return {}

    @classmethod
    def load_templates_config(cls, path=None):
        """Load vendor bill templates from YAML"""
        config_path = Path(path) if path else Path(__file__).parent / 'templates.yaml'
        if config_path.exists():
            with open(config_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        return {}


# Create singleton instance
config = Config()
