"""
OcrToolPicker - priority-based OCR engine selection

Reads the engine pool from tools.yaml. The lowest priority number wins;
remaining engines are offered as fallbacks when the pool allows it.
"""
import os
from typing import Dict, List, Optional, Any

from billflow.core.config.config import Config
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

GENERAL_OCR = 'general_ocr'


class OcrToolPicker:
    """Ranks OCR engines from a YAML-configured tool pool"""

    def __init__(self, tools_config: Optional[Dict[str, Any]] = None):
        """
        Initialize the picker

        Args:
            tools_config: Parsed tools.yaml; loaded from the config package when omitted
        """
        self.config = tools_config if tools_config is not None else Config.load_tools_config()

        self.tool_pools = self.config.get('tool_pools', {})
        self.selection_strategy = self.config.get('selection_strategy', {})
        self.fallback_enabled = self.selection_strategy.get('fallback', True)

    def ranked(self, capability: str = GENERAL_OCR) -> List[Dict[str, Any]]:
        """
        All tools for a capability in selection order

        Only the first tool is returned when fallback is disabled.

        Returns:
            List of dictionaries with 'name', 'config' and 'priority'
        """
        tools = sorted(self.tool_pools.get(capability) or [], key=lambda x: x.get('priority', 999))
        if not self.fallback_enabled:
            tools = tools[:1]
        return [self._describe(tool) for tool in tools]

    def _describe(self, tool: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'name': tool['name'],
            'config': self._resolve_config(tool.get('config', {})),
            'priority': tool.get('priority', 999),
        }

    def _resolve_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Resolve environment variable references in config

        Keys ending in '_env' name an environment variable whose value
        replaces them under the key without the suffix.
        """
        resolved = {}
        for key, value in (config or {}).items():
            if isinstance(value, str) and key.endswith('_env'):
                resolved[key[:-len('_env')]] = os.getenv(value, '')
            else:
                resolved[key] = value
        return resolved
