"""
Product name matching and reconciliation
"""

from .similarity import best_match, edit_distance, normalize_name, rank_matches, similarity

__all__ = [
    'best_match',
    'edit_distance',
    'normalize_name',
    'rank_matches',
    'similarity',
]
