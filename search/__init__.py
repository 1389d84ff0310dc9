from .fts import build_match_query, search_events, count_search_results

__all__ = ["build_match_query", "search_events", "count_search_results"]
