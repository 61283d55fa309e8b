"""
LLM integration for extraction

Provides the vision model client, prompt management and response parsing.
"""

from .openai_service import VisionModelClient, ImageInput, ModelResponse
from .prompt_manager import PromptManager, get_prompt_manager
from .response_parser import FeatureFlags, parse_extractions, parse_rows

__all__ = [
    'VisionModelClient',
    'ImageInput',
    'ModelResponse',
    'PromptManager',
    'get_prompt_manager',
    'FeatureFlags',
    'parse_extractions',
    'parse_rows'
]
