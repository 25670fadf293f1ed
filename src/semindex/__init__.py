"""On-device semantic retrieval over directories of source and documentation."""

from semindex.models import JobState, JobStatus, SearchResult
from semindex.semantic_index import SemanticIndex

__all__ = ["JobState", "JobStatus", "SearchResult", "SemanticIndex"]
