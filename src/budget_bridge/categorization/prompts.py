"""Prompt templates for AI payee cleanup and categorization.

Prompts are versioned so a wording change is visible in logs and tests.
"""

from __future__ import annotations

from dataclasses import dataclass

# v1.0: payee cleanup + category + reusable rule suggestion
PROMPT_VERSION = "v1.0"


@dataclass
class CleanupPrompt:
    """Prompt template for payee cleanup and category suggestion.

    Attributes:
        version: Prompt version.
        system_prompt: System message setting model behavior.
        user_template: Template for user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a financial transaction payee name cleanup assistant.
Your job is to convert messy, raw payee names from bank transactions into clean,
consistent names, and to pick the best budget category for the transaction.

Rules for cleaning up payee names:
1. Remove reference numbers, dates, card numbers and terminal ids
2. Remove generic payment method words (e.g., "PAYMENT", "DEBIT", "CARD PURCHASE")
3. Fix capitalization (use Title Case for business names, avoid ALL CAPS)
4. Keep names consistent (e.g., "McDonald's", not "MCDONALDS" or "Mcdonald")
5. Drop location identifiers unless they distinguish the merchant
6. Only choose a category from the provided list; use null if none fits

Respond in JSON format:
{
    "cleaned_payee": "The cleaned payee name",
    "payee_confidence": 0.95,
    "category": "CategoryName or null",
    "confidence": 0.85,
    "memo": "Optional short memo or null",
    "rule_suggestion": {
        "pattern": "string that matches the original name",
        "pattern_type": "EXACT | CONTAINS | STARTS_WITH | REGEX",
        "replacement": "consistent replacement name",
        "explanation": "why this rule generalizes"
    }
}
Set "rule_suggestion" to null when no reusable pattern exists."""

    user_template: str = """Please clean up this raw transaction payee name:

Original payee name: "{original}"

Additional context:
{context}

Available categories:
{categories}

Respond in the JSON format specified in your instructions."""

    def format_user_message(
        self,
        original: str,
        context: dict[str, str],
        categories: list[str],
    ) -> str:
        """Format the user message with transaction details.

        Args:
            original: Raw payee text from the bank.
            context: Extra transaction fields (amount, date, ...).
            categories: Allowed category names.

        Returns:
            Formatted user message.
        """
        context_str = "\n".join(f"- {k}: {v}" for k, v in sorted(context.items())) or "- none"
        categories_str = "\n".join(f"- {cat}" for cat in categories) or "- (no categories)"
        return self.user_template.format(
            original=original,
            context=context_str,
            categories=categories_str,
        )
