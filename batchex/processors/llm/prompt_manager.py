"""
Prompt Manager for extraction requests

Manages prompts stored in external files, allowing for easy editing
and versioning without code changes.
"""

import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
from jinja2 import Template
import logging

from batchex.processors.llm.response_parser import FeatureFlags, get_bbox_order

logger = logging.getLogger(__name__)


class PromptManager:
    """Manages prompts loaded from external files"""

    def __init__(self, prompts_dir: Optional[str] = None):
        """
        Initialize PromptManager

        Args:
            prompts_dir: Directory containing prompt files. If None, uses default location.
        """
        if prompts_dir is None:
            # Default to prompts directory in batchex package
            base_dir = Path(__file__).parent.parent.parent
            prompts_dir = base_dir / "prompts"

        self.prompts_dir = Path(prompts_dir)
        self._prompts_cache: Dict[str, Dict[str, Any]] = {}

    def load_prompt(self, prompt_name: str, use_cache: bool = True) -> Dict[str, Any]:
        """
        Load a prompt from YAML file

        Args:
            prompt_name: Name of the prompt (without .yaml extension)
            use_cache: Whether to use cached prompts

        Returns:
            Dictionary with 'system_prompt' and 'user_prompt_template' keys
        """
        if use_cache and prompt_name in self._prompts_cache:
            return self._prompts_cache[prompt_name]

        prompt_file = self.prompts_dir / f"{prompt_name}.yaml"

        if not prompt_file.exists():
            logger.error(f"Prompt file not found: {prompt_file}")
            raise FileNotFoundError(f"Prompt file not found: {prompt_file}")

        try:
            with open(prompt_file, 'r', encoding='utf-8') as f:
                prompt_data = yaml.safe_load(f)

            if use_cache:
                self._prompts_cache[prompt_name] = prompt_data

            return prompt_data
        except Exception as e:
            logger.error(f"Failed to load prompt {prompt_name}: {e}")
            raise

    def get_user_prompt(self, prompt_name: str, **kwargs) -> str:
        """
        Get user prompt with template variables filled in

        Args:
            prompt_name: Name of the prompt
            **kwargs: Variables to fill in the template

        Returns:
            Rendered user prompt string
        """
        prompt_data = self.load_prompt(prompt_name)
        template = Template(prompt_data.get('user_prompt_template', ''))
        return template.render(**kwargs).strip()

    def build_extraction_prompt(
        self,
        columns: List[Dict[str, Any]],
        flags: FeatureFlags,
        coordinate_format: Optional[str] = None,
        page: Optional[Dict[str, int]] = None
    ) -> str:
        """
        Render the extraction prompt for a project's columns

        Args:
            columns: Project column definitions
            flags: Feature flags
            coordinate_format: Project coordinate format, selects the bbox order
            page: ``{'current': n, 'total': m}`` when images are sent one at a time
        """
        multi_row = flags.multi_row_extraction or page is not None
        if multi_row and len(columns) >= 2:
            examples = [
                {'row_index': 0, 'column': columns[0]},
                {'row_index': 0, 'column': columns[1]},
                {'row_index': 1, 'column': columns[0]},
                {'row_index': 1, 'column': columns[1]},
            ]
        else:
            examples = [{'row_index': 0, 'column': col} for col in columns]

        return self.get_user_prompt(
            'extraction',
            columns=columns,
            flags=flags,
            bbox_order=get_bbox_order(coordinate_format),
            page=page,
            examples=examples
        )

    def build_redo_prompt(
        self,
        kept_extractions: List[Dict[str, Any]],
        redo_columns: List[Dict[str, Any]],
        coordinate_format: Optional[str] = None,
        template: Optional[str] = None
    ) -> str:
        """
        Render the redo prompt

        ``template`` is the project's own redo instructions; its
        ``{correct_extractions}`` and ``{redo_columns}`` placeholders are
        substituted before the fixed context is appended.
        """
        if not template:
            template = self.load_prompt('redo').get('default_template', '')

        context_text = '\n'.join(f"  - {e.get('column_name')}: {e.get('value')}" for e in kept_extractions)
        redo_text = '\n'.join(
            f"- {col.get('name')} ({col.get('type', 'text')}): {col.get('description', '')}"
            for col in redo_columns
        )
        template = template.replace('{correct_extractions}', context_text or '  (No correct extractions yet)')
        template = template.replace('{redo_columns}', redo_text)

        return self.get_user_prompt(
            'redo',
            template=template.strip(),
            kept_extractions=kept_extractions,
            redo_columns=redo_columns,
            coordinate_format=coordinate_format or 'normalized_1000',
            bbox_order=get_bbox_order(coordinate_format)
        )

    def clear_cache(self):
        """Clear the prompts cache"""
        self._prompts_cache.clear()

    def list_prompts(self) -> list:
        """List all available prompt files"""
        if not self.prompts_dir.exists():
            return []

        return [
            f.stem for f in self.prompts_dir.glob("*.yaml")
        ]


# Global prompt manager instance
_default_prompt_manager: Optional[PromptManager] = None


def get_prompt_manager(prompts_dir: Optional[str] = None) -> PromptManager:
    """Get the default prompt manager instance"""
    global _default_prompt_manager

    if _default_prompt_manager is None:
        _default_prompt_manager = PromptManager(prompts_dir)

    return _default_prompt_manager
