"""
Tests for InvoexConfig
"""

import yaml

from invoex.config.invoex_config import InvoexConfig
from invoex.context import ServiceContext
from invoex.models.catalog import PricingConfig, ReconciliationConfig
from invoex.models.invoice import ExtractionConfig


class TestInvoexConfig:
    """Tests for configuration loading"""

    def test_defaults(self, tmp_path):
        """Test packaged default configuration"""
        empty = tmp_path / 'empty.yaml'
        empty.write_text('')
        config = InvoexConfig(empty, use_environment=False)
        assert config.get('reconciliation.auto_link_threshold') == 0.8
        assert config.get('extraction.min_viable_items') == 3
        assert config.get('pricing.category_markups')['Bulk'] == 1.75

    def test_user_file_merges_over_defaults(self, tmp_path):
        """Test user YAML is deep-merged over defaults"""
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({'reconciliation': {'auto_link_threshold': 0.9}}))
        config = InvoexConfig(path, use_environment=False)
        assert config.get('reconciliation.auto_link_threshold') == 0.9
        # siblings survive the merge
        assert config.get('reconciliation.auto_create') is True

    def test_environment_secrets(self, monkeypatch):
        """Test secrets are read from the environment"""
        monkeypatch.setenv('ANTHROPIC_API_KEY', 'sk-test')
        monkeypatch.setenv('SQUARE_ACCESS_TOKEN', 'sq-test')
        config = InvoexConfig(overrides={})
        assert config.get('llm.api_key') == 'sk-test'
        assert config.get('square.access_token') == 'sq-test'

    def test_overrides_apply_last(self, monkeypatch):
        """Test explicit overrides win over file values"""
        monkeypatch.setenv('INVOEX_DATABASE_PATH', '/tmp/from-env.db')
        config = InvoexConfig(overrides={'database': {'path': '/tmp/override.db'}})
        assert config.get('database.path') == '/tmp/override.db'

    def test_get_missing_returns_default(self):
        """Test get with a missing dotted key"""
        config = InvoexConfig(use_environment=False)
        assert config.get('nope.nothing', 'fallback') == 'fallback'

    def test_set_creates_sections(self):
        """Test set creates intermediate sections"""
        config = InvoexConfig(use_environment=False)
        config.set('square.location_ids', ['L1'])
        assert config.section('square')['location_ids'] == ['L1']

    def test_save_strips_secrets(self, tmp_path):
        """Test save never writes secrets"""
        config = InvoexConfig(use_environment=False, overrides={'llm': {'api_key': 'secret'}})
        written = config.save(tmp_path / 'saved.yaml')
        data = yaml.safe_load(written.read_text())
        assert 'api_key' not in data['llm']
        assert data['llm']['model'] == config.get('llm.model')

    def test_sections_build_typed_configs(self):
        """Test config sections build typed configs"""
        config = InvoexConfig(use_environment=False)
        extraction = ExtractionConfig(**config.section('extraction'))
        reconciliation = ReconciliationConfig(**config.section('reconciliation'))
        pricing = PricingConfig(**config.section('pricing'))
        assert extraction.min_viable_items == 3
        assert config.get('tax_rate') == 0.1
        assert reconciliation.auto_link_threshold == 0.8
        assert pricing.category_markups['Fresh Bread'] == 1.5


class TestServiceContext:
    """Tests for ServiceContext wiring"""

    def test_single_tax_rate(self, tmp_path):
        """Test extraction and pricing share the top-level tax rate"""
        config = InvoexConfig(use_environment=False, overrides={
            'tax_rate': 0.15,
            'database': {'type': 'sqlite', 'path': str(tmp_path / 'context.db')},
            'pricing': {'tax_rate': 0.2},
        })

        context = ServiceContext.from_config(config)
        try:
            assert float(context.parser.config.tax_rate) == 0.15
            assert float(context.parser.heuristic_extractor.config.tax_rate) == 0.15
            assert float(context.reconciler.pricing.tax_rate) == 0.15
            assert context.vision_service is None
            assert context.sync_workflow is None
        finally:
            context.close()
