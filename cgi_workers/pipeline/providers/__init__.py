"""
Provider adapters for the CGI pipeline.
"""

from .base import OrderedFallback, ProviderAdapter, ProviderResult
from .fal import FalImageGenerator, FalKlingVideoGenerator
from .gemini import GeminiDescriptionEnhancer, GeminiVideoPromptWriter
from .kie import KieVeoVideoGenerator

__all__ = [
    "OrderedFallback",
    "ProviderAdapter",
    "ProviderResult",
    "FalImageGenerator",
    "FalKlingVideoGenerator",
    "GeminiDescriptionEnhancer",
    "GeminiVideoPromptWriter",
    "KieVeoVideoGenerator",
]
