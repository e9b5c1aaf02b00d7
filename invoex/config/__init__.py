"""
invoex configuration
"""

from .invoex_config import InvoexConfig, configure_logging

__all__ = ['InvoexConfig', 'configure_logging']
