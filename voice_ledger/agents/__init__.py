"""AI Agents package."""

from voice_ledger.agents.interface import ExpenseExtractorInterface
from voice_ledger.agents.ai_agents import GEMINI_PROVIDER, GeminiExpenseExtractor

__all__ = [
    "ExpenseExtractorInterface",
    "GEMINI_PROVIDER",
    "GeminiExpenseExtractor",
]
