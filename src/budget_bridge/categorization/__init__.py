"""
Payee cleanup and categorization.

Provides:
- RuleBook: approved/pending cleanup rules and matching
- OpenAICategorizationProvider: AI fallback (CategorizationProvider port)
"""

from .prompts import PROMPT_VERSION, CleanupPrompt
from .provider import LLMConcurrencyLimiter, OpenAICategorizationProvider, parse_json_response
from .rules import RuleBook, RuleNotFoundError

__all__ = [
    "PROMPT_VERSION",
    "CleanupPrompt",
    "LLMConcurrencyLimiter",
    "OpenAICategorizationProvider",
    "RuleBook",
    "RuleNotFoundError",
    "parse_json_response",
]
