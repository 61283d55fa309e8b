"""
Tests for PromptManager
"""

import tempfile
from pathlib import Path

import pytest
import yaml

from batchex.processors.llm.prompt_manager import PromptManager
from batchex.processors.llm.response_parser import FeatureFlags

COLUMNS = [
    {'id': 'invoice_number', 'name': 'Invoice Number', 'type': 'text', 'description': 'Invoice id'},
    {'id': 'status', 'name': 'Status', 'allowed_values': ['paid', 'open']},
]


class TestPromptManager:
    """Tests for PromptManager"""

    def test_prompt_manager_initialization(self):
        manager = PromptManager()
        assert manager.prompts_dir.exists()
        assert {'extraction', 'redo'} <= set(manager.list_prompts())

    def test_load_prompt_from_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            prompt_file = Path(tmpdir) / "custom.yaml"
            with open(prompt_file, 'w') as f:
                yaml.dump({'user_prompt_template': 'Columns: {{ columns | length }}'}, f)

            manager = PromptManager(prompts_dir=tmpdir)

            assert manager.get_user_prompt('custom', columns=COLUMNS) == 'Columns: 2'

    def test_missing_prompt_raises(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(FileNotFoundError):
                PromptManager(prompts_dir=tmpdir).load_prompt('nope')

    def test_extraction_prompt_lists_columns(self):
        prompt = PromptManager().build_extraction_prompt(COLUMNS, FeatureFlags())

        assert 'column_id: "invoice_number"' in prompt
        assert 'Invoice Number' in prompt
        assert 'paid' in prompt
        assert 'PER-PAGE MODE' not in prompt

    def test_extraction_prompt_per_page(self):
        prompt = PromptManager().build_extraction_prompt(
            COLUMNS, FeatureFlags(), page={'current': 2, 'total': 3}
        )

        assert 'page 2 of 3' in prompt

    def test_redo_prompt_substitutes_placeholders(self):
        kept = [{'column_id': 'status', 'column_name': 'Status', 'value': 'paid'}]
        template = "Known: {correct_extractions}\nRedo: {redo_columns}"

        prompt = PromptManager().build_redo_prompt(kept, COLUMNS[:1], template=template)

        assert '{correct_extractions}' not in prompt
        assert '{redo_columns}' not in prompt
        assert 'Status: paid' in prompt
        assert '- Invoice Number (text): Invoice id' in prompt

    def test_redo_prompt_default_template(self):
        prompt = PromptManager().build_redo_prompt([], COLUMNS[:1])

        assert '(No correct extractions yet)' in prompt
        assert '"column_id": "invoice_number"' in prompt
