# text_generators/__init__.py
from .base import Completion, TextGeneratorAPI, Usage
from .anthropic import AnthropicTextGenerator

__all__ = [
    "Completion",
    "TextGeneratorAPI",
    "Usage",
    "AnthropicTextGenerator",
]


def get_text_generator(api: str, model: str) -> TextGeneratorAPI:
    """Return an appropriate text-generator instance for the given API."""
    if api == "anthropic":
        return AnthropicTextGenerator(model)
    raise ValueError(f"Unknown API: {api}")
