from bookcharts.scoring.aggregator import MetricsAggregator, fold_scores
from bookcharts.scoring.engine import score, score_weekly_list
from bookcharts.scoring.rankings import RankingCategorizer

__all__ = [
    "MetricsAggregator",
    "RankingCategorizer",
    "fold_scores",
    "score",
    "score_weekly_list",
]
