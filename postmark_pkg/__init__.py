"""
Postmark - a lightweight CMS for Markdown-based posts.

Postmark watches a content directory of post folders, renders each post's
Markdown source to HTML beside it, and keeps an SQLite record of every post and
its topics in step with what is on disk.
"""

__version__ = "1.0.0"

from .pipeline import ReconciliationPipeline, BatchSummary
from .store import DataStore

__all__ = ['ReconciliationPipeline', 'BatchSummary', 'DataStore']
