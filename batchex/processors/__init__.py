"""
BatchEx Processors Module

Contains the model-facing parts of extraction:
- LLM client for OpenAI-compatible vision endpoints
- Prompt rendering
- Model response parsing
"""

from . import llm

__all__ = ['llm']
