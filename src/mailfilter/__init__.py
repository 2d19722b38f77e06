"""mailfilter: incremental mailbox sync with AI classification and sorting."""

__version__ = "0.1.0"
