"""Protocol interfaces for credit-guard collaborators."""
from .credit import CreditScoreProvider, MarketSignal, RiskAnalyzer
from .notifier import Notifier
from .price_oracle import PriceOracle
from .provider import ProviderAdapter
from .repository import Repository, Versioned

__all__ = [
    "CreditScoreProvider",
    "MarketSignal",
    "Notifier",
    "PriceOracle",
    "ProviderAdapter",
    "Repository",
    "RiskAnalyzer",
    "Versioned",
]
