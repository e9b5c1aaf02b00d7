"""
External point-of-sale platform connectors
"""

from .base import PosPlatform
from .square import SquareConnector

__all__ = ['PosPlatform', 'SquareConnector']
