from .market_data_provider import MarketDataProvider, StaticMarketDataProvider
from .risk_scorer import HeuristicRiskScorer, RiskScorer
from .planner import FallbackPlanner, Planner, even_split
from .submitter import DryRunSubmitter, Submitter
from .collaborator_factory import CollaboratorFactory, CollaboratorKind

# Register built-in collaborators
CollaboratorFactory.register(CollaboratorKind.MARKET_DATA, "static", StaticMarketDataProvider)
CollaboratorFactory.register(CollaboratorKind.RISK_SCORER, "heuristic", HeuristicRiskScorer)
CollaboratorFactory.register(CollaboratorKind.PLANNER, "fallback", FallbackPlanner)
CollaboratorFactory.register(CollaboratorKind.SUBMITTER, "dry-run", DryRunSubmitter)

__all__ = [
    "MarketDataProvider",
    "StaticMarketDataProvider",
    "RiskScorer",
    "HeuristicRiskScorer",
    "Planner",
    "FallbackPlanner",
    "even_split",
    "Submitter",
    "DryRunSubmitter",
    "CollaboratorFactory",
    "CollaboratorKind",
]
