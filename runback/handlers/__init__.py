"""LLM-backed collaborators for the checkpoint policy.

Both run on OpenRouter through OpenRouterClient.complete() using the
configured helper models.
"""

from runback.handlers.summarizer import LLMSummarizer
from runback.handlers.topic_classifier import LLMTopicClassifier

__all__ = ["LLMSummarizer", "LLMTopicClassifier"]
