"""
Tests for the vision extractor, prompt manager and Claude service
"""

import asyncio
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import anthropic
import httpx
import pytest
import yaml

from conftest import PNG_BYTES, line_item, vision_reply
from invoex.exceptions import (
    MalformedResponseError,
    MissingDebugInfoError,
    TooFewItemsError,
    VisionServiceError,
)
from invoex.models.invoice import ExtractionConfig
from invoex.processors.base import OutcomeKind
from invoex.processors.invoice.vision_extractor import (
    PROMPT_NAME,
    VisionExtractor,
    extract_json_block,
    quality_warnings,
)
from invoex.processors.llm.claude_service import ClaudeVisionService
from invoex.processors.llm.prompt_manager import PromptManager


def make_extractor(reply=None, side_effect=None, config=None):
    service = Mock()
    service.describe_image = AsyncMock(return_value=reply, side_effect=side_effect)
    return VisionExtractor(service, config or ExtractionConfig()), service


def three_items():
    return [
        line_item('Organic Spelt Flour 1kg', 2, '4.50'),
        line_item('Brown Rice 2kg', 1, '6.20', has_gst=False),
        line_item('Tamari 250ml', 3, '3.10'),
    ]


class TestPromptManager:
    """Tests for PromptManager"""

    def test_packaged_prompt_exists(self):
        """Test the packaged prompt loads"""
        manager = PromptManager()
        assert PROMPT_NAME in manager.list_prompts()
        assert 'debugging' in manager.get_system_prompt(PROMPT_NAME) + manager.load_prompt(PROMPT_NAME)['user_prompt_template']

    def test_user_prompt_renders_variables(self):
        """Test rendering the user prompt template"""
        manager = PromptManager()
        prompt = manager.get_user_prompt(
            PROMPT_NAME, page_number=2, tax_rate=Decimal('0.10'), default_category='Bulk',
            categories=['Bulk', 'House'], min_items=3
        )
        assert 'Bulk' in prompt
        assert '{{' not in prompt

    def test_load_prompt_from_directory(self, tmp_path):
        """Test loading a prompt from a YAML directory"""
        (tmp_path / 'custom.yaml').write_text(yaml.safe_dump({
            'system_prompt': 'You read invoices.',
            'user_prompt_template': 'Page {{ page_number }}',
        }))
        manager = PromptManager(prompts_dir=tmp_path)
        assert manager.get_system_prompt('custom') == 'You read invoices.'
        assert manager.get_user_prompt('custom', page_number=4) == 'Page 4'

    def test_missing_prompt_falls_back(self, tmp_path):
        """Test a missing prompt gives an empty system prompt"""
        manager = PromptManager(prompts_dir=tmp_path)
        assert manager.get_system_prompt('absent') == ''

    def test_prompt_caching(self, tmp_path):
        """Test prompts are cached after the first load"""
        path = tmp_path / 'cached.yaml'
        path.write_text(yaml.safe_dump({'system_prompt': 'first'}))
        manager = PromptManager(prompts_dir=tmp_path)
        assert manager.get_system_prompt('cached') == 'first'
        path.write_text(yaml.safe_dump({'system_prompt': 'second'}))
        assert manager.get_system_prompt('cached') == 'first'
        manager.clear_cache()
        assert manager.get_system_prompt('cached') == 'second'


class TestClaudeVisionService:
    """Tests for ClaudeVisionService with a mocked client"""

    @pytest.mark.asyncio
    async def test_sends_image_and_joins_text(self):
        """Test the image block is sent and text joined"""
        client = Mock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[
            SimpleNamespace(type='text', text='part one, '),
            SimpleNamespace(type='text', text='part two'),
        ]))
        service = ClaudeVisionService(client=client, model='test-model')

        text = await service.describe_image(PNG_BYTES, 'Read this', system_prompt='System')

        assert text == 'part one, part two'
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs['model'] == 'test-model'
        assert kwargs['system'] == 'System'
        source = kwargs['messages'][0]['content'][0]['source']
        assert source['media_type'] == 'image/png'

    @pytest.mark.asyncio
    async def test_api_errors_become_service_errors(self):
        """Test API errors become service errors"""
        request = httpx.Request('POST', 'https://api.anthropic.com/v1/messages')
        client = Mock()
        client.messages.create = AsyncMock(side_effect=anthropic.APIConnectionError(request=request))
        service = ClaudeVisionService(client=client)

        with pytest.raises(VisionServiceError):
            await service.describe_image(PNG_BYTES, 'Read this')

    def test_requires_api_key(self, monkeypatch):
        """Test the service needs an API key"""
        monkeypatch.delenv('ANTHROPIC_API_KEY', raising=False)
        with pytest.raises(ValueError):
            ClaudeVisionService()


class TestResponseParsing:
    """Tests for VisionExtractor.parse_response"""

    def test_extract_json_block(self):
        """Test extracting the fenced JSON block"""
        assert extract_json_block('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert extract_json_block('no json here') is None

    def test_valid_page(self):
        """Test a valid vision page"""
        extractor, _ = make_extractor()
        page = extractor.parse_response(vision_reply(three_items()), 1)

        assert len(page.line_items) == 3
        assert page.vendor.name == 'Wholefoods Direct'
        assert page.invoice_number == 'INV-1001'
        assert str(page.invoice_date) == '2024-03-05'
        assert page.confidence == 0.95
        assert page.debugging is not None
        assert [i.description for i in page.line_items] == [
            'Organic Spelt Flour 1kg', 'Brown Rice 2kg', 'Tamari 250ml'
        ]

    def test_no_json_is_empty_page(self):
        """Test a response without JSON is an empty page"""
        extractor, _ = make_extractor()
        page = extractor.parse_response('This page only has payment terms.', 3)
        assert page.is_empty
        assert page.page_number == 3

    def test_missing_debugging_rejected(self):
        """Test a missing debugging block is rejected"""
        extractor, _ = make_extractor()
        with pytest.raises(MissingDebugInfoError):
            extractor.parse_response(vision_reply(three_items(), debugging=False), 1)

    def test_too_few_items_rejected(self):
        """Test too few items are rejected"""
        extractor, _ = make_extractor()
        with pytest.raises(TooFewItemsError) as excinfo:
            extractor.parse_response(vision_reply(three_items()[:2]), 1)
        assert excinfo.value.found == 2

    def test_minimum_is_configurable(self):
        """Test the minimum item count is configurable"""
        extractor, _ = make_extractor(config=ExtractionConfig(min_viable_items=1))
        page = extractor.parse_response(vision_reply(three_items()[:1]), 1)
        assert len(page.line_items) == 1

    def test_malformed_json_rejected(self):
        """Test malformed JSON is rejected"""
        extractor, _ = make_extractor()
        with pytest.raises(MalformedResponseError):
            extractor.parse_response('```json\n{"lineItems": [1, 2,}\n```', 1)

    def test_model_reporting_zero_rows_is_empty_page(self):
        """Test zero reported rows is an empty page"""
        extractor, _ = make_extractor()
        page = extractor.parse_response(vision_reply([]), 2)
        assert page.is_empty
        assert page.debugging is not None

    def test_claimed_count_mismatch_is_warning(self):
        """Test a claimed count mismatch is a warning"""
        items = three_items()
        extractor, _ = make_extractor()
        page = extractor.parse_response(vision_reply(items, claimed_count=5), 1)
        assert len(page.line_items) == 3
        assert any('found 5 rows' in w for w in page.warnings)

    def test_items_without_description_skipped(self):
        """Test items without descriptions are skipped"""
        items = three_items() + [line_item('', 1, '1.00')]
        extractor, _ = make_extractor()
        page = extractor.parse_response(vision_reply(items), 1)
        assert len(page.line_items) == 3

    def test_quality_warnings(self):
        """Test extraction quality warnings"""
        extractor, _ = make_extractor()
        items = [line_item(f'Item {n}', 1, '1.00') for n in range(6)]
        page = extractor.parse_response(vision_reply(items), 1)
        assert quality_warnings(page.line_items) == [
            '6/6 items have quantity 1; the quantity column may have been misread',
            'All items marked with GST',
        ]


class TestTryExtract:
    """Failures become NEEDS_FALLBACK outcomes"""

    @pytest.mark.asyncio
    async def test_ok(self):
        """Test a good page is an ok outcome"""
        extractor, service = make_extractor(vision_reply(three_items()))
        outcome = await extractor.try_extract(PNG_BYTES, 1)
        assert outcome.kind == OutcomeKind.OK
        assert len(outcome.page.line_items) == 3
        prompt = service.describe_image.call_args.args[1]
        assert isinstance(prompt, str) and prompt

    @pytest.mark.asyncio
    async def test_quality_failure_needs_fallback(self):
        """Test a quality failure asks for fallback"""
        extractor, _ = make_extractor(vision_reply(three_items()[:1]))
        outcome = await extractor.try_extract(PNG_BYTES, 1)
        assert outcome.kind == OutcomeKind.NEEDS_FALLBACK
        assert 'minimum 3' in outcome.reason

    @pytest.mark.asyncio
    async def test_service_error_needs_fallback(self):
        """Test a service error asks for fallback"""
        extractor, _ = make_extractor(side_effect=VisionServiceError('unavailable'))
        outcome = await extractor.try_extract(PNG_BYTES, 1)
        assert outcome.kind == OutcomeKind.NEEDS_FALLBACK

    @pytest.mark.asyncio
    async def test_timeout_needs_fallback(self):
        """Test a timeout asks for fallback"""
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        extractor, service = make_extractor(config=ExtractionConfig(vision_timeout_seconds=0.01))
        service.describe_image = slow
        outcome = await extractor.try_extract(PNG_BYTES, 1)
        assert outcome.kind == OutcomeKind.NEEDS_FALLBACK
        assert 'timed out' in outcome.reason
