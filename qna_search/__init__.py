"""qna_search: semantic question/answer search with object-store durability."""

__version__ = "0.3.0"
