from services.query.matcher import QueryMatcher
from services.query.service import QueryService

__all__ = ["QueryMatcher", "QueryService"]
