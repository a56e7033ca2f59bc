"""
Prompt construction: templates, lyrics excerpt selection and prompt hashing.
"""

from lyricslides.prompt.builder import (
    DEFAULT_TEMPLATE_NAME,
    DEFAULT_TEMPLATES,
    PromptBuilder,
    extract_excerpt,
    prompt_hash,
)

__all__ = [
    "DEFAULT_TEMPLATE_NAME",
    "DEFAULT_TEMPLATES",
    "PromptBuilder",
    "extract_excerpt",
    "prompt_hash",
]
