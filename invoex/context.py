"""
Service wiring

Every component is constructed here from an ``InvoexConfig`` and passed
into the ones that depend on it. Components whose credentials are missing
are left as None so commands that do not need them still work.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from invoex.config.invoex_config import InvoexConfig
from invoex.connectors.square import SquareConnector
from invoex.db.connection import Database
from invoex.matching.reconciler import ReconciliationEngine
from invoex.models.catalog import PricingConfig, ReconciliationConfig, SyncConfig
from invoex.models.invoice import ExtractionConfig
from invoex.processors.invoice.heuristic_extractor import HeuristicExtractor
from invoex.processors.invoice.pipeline import InvoiceParser
from invoex.processors.invoice.vision_extractor import VisionExtractor
from invoex.processors.llm.claude_service import ClaudeVisionService
from invoex.processors.llm.prompt_manager import PromptManager
from invoex.processors.ocr import TesseractOCREngine
from invoex.services.catalog_gateway import CatalogGateway, SqlCatalogGateway
from invoex.services.invoice_service import InvoiceService
from invoex.services.sync_service import SyncWorkflow
from invoex.utils.pricing import DEFAULT_TAX_RATE
from invoex.utils.retry import RetryConfig

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    config: InvoexConfig
    db: Database
    gateway: CatalogGateway
    parser: InvoiceParser
    reconciler: ReconciliationEngine
    invoice_service: InvoiceService
    vision_service: Optional[ClaudeVisionService] = None
    square: Optional[SquareConnector] = None
    sync_workflow: Optional[SyncWorkflow] = None

    @classmethod
    def from_config(cls, config: InvoexConfig, create_tables: bool = True) -> 'ServiceContext':
        retry_config = RetryConfig.from_dict(config.section('retry'))
        # one tax rate for extracted GST and derived prices
        tax_rate = config.get('tax_rate', DEFAULT_TAX_RATE)
        extraction = ExtractionConfig(**{**config.section('extraction'), 'tax_rate': tax_rate})
        pricing = PricingConfig(**{**config.section('pricing'), 'tax_rate': tax_rate})

        db = Database(config)
        if create_tables:
            db.create_tables()
        gateway = SqlCatalogGateway(db, retry_config)

        vision_service = None
        llm = config.section('llm')
        if llm.get('api_key'):
            vision_service = ClaudeVisionService(
                api_key=llm['api_key'],
                model=llm.get('model', 'claude-3-5-haiku-latest'),
                max_tokens=llm.get('max_tokens', 8192),
                temperature=llm.get('temperature', 0.1),
                timeout=extraction.vision_timeout_seconds,
                max_retries=llm.get('max_retries', 1)
            )
        else:
            logger.warning("No Anthropic API key configured; invoices will be read with OCR heuristics only")

        ocr = config.section('ocr')
        parser = InvoiceParser(
            VisionExtractor(
                vision_service,
                extraction,
                PromptManager(),
                categories=list(pricing.category_markups)
            ) if vision_service else None,
            HeuristicExtractor(
                TesseractOCREngine(lang=ocr.get('lang', 'eng'), config=ocr.get('config', '--oem 3 --psm 6')),
                extraction
            ),
            extraction
        )

        reconciler = ReconciliationEngine(
            gateway,
            ReconciliationConfig(**config.section('reconciliation')),
            pricing,
            default_category=extraction.default_category
        )

        square = None
        sync_workflow = None
        square_config = config.section('square')
        if square_config.get('access_token'):
            sync_config = SyncConfig(**config.section('sync'))
            square = SquareConnector(
                access_token=square_config['access_token'],
                environment=square_config.get('environment', 'production'),
                api_version=square_config.get('api_version', '2024-10-17'),
                location_ids=square_config.get('location_ids') or [],
                timeout=square_config.get('timeout_seconds', 30),
                page_size=sync_config.order_page_size,
                max_pages=sync_config.max_order_pages,
                inventory_batch_size=sync_config.inventory_batch_size,
                retry_config=retry_config
            )
            sync_workflow = SyncWorkflow(
                gateway, square, reconciler, pricing, sync_config,
                default_category=extraction.default_category
            )

        return cls(
            config=config,
            db=db,
            gateway=gateway,
            parser=parser,
            reconciler=reconciler,
            invoice_service=InvoiceService(parser, gateway, reconciler),
            vision_service=vision_service,
            square=square,
            sync_workflow=sync_workflow
        )

    def close(self) -> None:
        self.db.dispose()
