"""
Prompt Manager

Prompts live in YAML files under ``invoex/prompts`` so they can be edited
and versioned without code changes. User templates are rendered with Jinja2.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jinja2 import Template

logger = logging.getLogger(__name__)

DEFAULT_PROMPTS_DIR = Path(__file__).parent.parent.parent / "prompts"


class PromptManager:
    """Manages prompts loaded from external files"""

    def __init__(self, prompts_dir: Optional[Union[str, Path]] = None):
        """
        Args:
            prompts_dir: Directory containing prompt files. Defaults to the packaged prompts.
        """
        self.prompts_dir = Path(prompts_dir) if prompts_dir else DEFAULT_PROMPTS_DIR
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
            logger.warning(f"Prompt file not found: {prompt_file}")
            return {
                'system_prompt': '',
                'user_prompt_template': '{{ content }}'
            }

        try:
            with open(prompt_file, 'r', encoding='utf-8') as f:
                prompt_data = yaml.safe_load(f) or {}
        except Exception as e:
            logger.error(f"Failed to load prompt {prompt_name}: {e}")
            raise

        if use_cache:
            self._prompts_cache[prompt_name] = prompt_data
        return prompt_data

    def get_system_prompt(self, prompt_name: str) -> str:
        return self.load_prompt(prompt_name).get('system_prompt', '')

    def get_user_prompt(self, prompt_name: str, **kwargs) -> str:
        """Render the user prompt template with ``kwargs``"""
        prompt_data = self.load_prompt(prompt_name)
        template = Template(prompt_data.get('user_prompt_template', '{{ content }}'))
        return template.render(**kwargs)

    def clear_cache(self) -> None:
        self._prompts_cache.clear()

    def list_prompts(self) -> List[str]:
        if not self.prompts_dir.exists():
            return []
        return sorted(f.stem for f in self.prompts_dir.glob("*.yaml"))
