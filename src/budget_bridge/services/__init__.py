"""
Pipeline workflows: import, categorize, submit, review.
"""

from .categorizer import (
    CategorizationResult,
    CategorizationWorkflow,
    Match,
    ai_matcher,
    rule_matcher,
)
from .importer import ImportResult, ImportWorkflow, validate_date_range
from .review import ReviewService
from .submitter import SubmissionResult, SubmissionWorkflow

__all__ = [
    "CategorizationResult",
    "CategorizationWorkflow",
    "ImportResult",
    "ImportWorkflow",
    "Match",
    "ReviewService",
    "SubmissionResult",
    "SubmissionWorkflow",
    "ai_matcher",
    "rule_matcher",
    "validate_date_range",
]
