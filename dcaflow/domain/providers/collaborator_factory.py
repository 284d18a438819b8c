from enum import Enum
from typing import Any

from .market_data_provider import MarketDataProvider
from .planner import Planner
from .risk_scorer import RiskScorer
from .submitter import Submitter


class CollaboratorKind(str, Enum):
    MARKET_DATA = "market_data"
    RISK_SCORER = "risk_scorer"
    PLANNER = "planner"
    SUBMITTER = "submitter"


_BASES: dict[CollaboratorKind, type] = {
    CollaboratorKind.MARKET_DATA: MarketDataProvider,
    CollaboratorKind.RISK_SCORER: RiskScorer,
    CollaboratorKind.PLANNER: Planner,
    CollaboratorKind.SUBMITTER: Submitter,
}


class CollaboratorFactory:
    """Registry of collaborator implementations, selected by configuration.

    Each collaborator kind has its own key space, e.g. ``("planner", "fallback")``.
    """

    _registry: dict[CollaboratorKind, dict[str, type]] = {kind: {} for kind in CollaboratorKind}

    @classmethod
    def register(cls, kind: CollaboratorKind | str, key: str, implementation: type) -> None:
        """
        Register a collaborator implementation.

        Args:
            kind: Collaborator kind the implementation fulfils
            key: Identifier used in configuration (e.g., "fallback")
            implementation: Subclass of the kind's base class

        Raises:
            TypeError: If implementation does not subclass the kind's base class
        """
        kind = CollaboratorKind(kind)
        base = _BASES[kind]
        if not (isinstance(implementation, type) and issubclass(implementation, base)):
            raise TypeError(f"{implementation!r} is not a {base.__name__}")
        cls._registry[kind][key] = implementation

    @classmethod
    def create(
        cls, kind: CollaboratorKind | str, key: str, config: dict[str, Any] | None = None
    ) -> Any:
        """
        Create a collaborator instance.

        Raises:
            KeyError: If key is not registered for kind
        """
        kind = CollaboratorKind(kind)
        registry = cls._registry[kind]
        if key not in registry:
            available = ", ".join(registry.keys())
            raise KeyError(
                f"{kind.value}: '{key}' not found. Available: {available}"
            )
        return registry[key](**(config or {}))

    @classmethod
    def list_collaborators(cls, kind: CollaboratorKind | str) -> list[str]:
        return list(cls._registry[CollaboratorKind(kind)].keys())

    @classmethod
    def get_metadata(cls, kind: CollaboratorKind | str, key: str) -> dict[str, Any] | None:
        registry = cls._registry[CollaboratorKind(kind)]
        if key not in registry:
            return None
        return registry[key].get_metadata()
