"""
Language-model services and prompt management
"""

from .claude_service import ClaudeVisionService
from .prompt_manager import PromptManager

__all__ = ['ClaudeVisionService', 'PromptManager']
