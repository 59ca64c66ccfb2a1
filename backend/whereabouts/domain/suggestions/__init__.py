"""Mutual-friend suggestion exports."""

from .ranker import Suggestion, SuggestionRanker, rank_suggestions  # noqa: F401
