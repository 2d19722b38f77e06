"""Core utilities: errors, logging, rate limiting."""
