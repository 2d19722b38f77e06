"""Claude-based email classification into IMPORTANT / REVIEW / JUNK."""

from mailfilter.classifier.claude_classifier import ClaudeClassifier

__all__ = ["ClaudeClassifier"]
