"""Credit score, market signal and risk analyzer collaborators."""
from __future__ import annotations

from typing import Protocol

from ..models import AnalyzerResult, CreditScore, RiskAssessment, UnderwritingRequest


class CreditScoreProvider(Protocol):
    """Supplies a 0-1000 score and grade; the score may be stale."""

    async def get_score(self, user_id: str) -> CreditScore: ...


class MarketSignal(Protocol):
    """Market condition in [0, 1], where 1 is most favourable."""

    async def market_condition(self) -> float: ...


class RiskAnalyzer(Protocol):
    """Opaque model returning a recommendation and a confidence."""

    async def analyze(
        self,
        user_id: str,
        request: UnderwritingRequest,
        risk: RiskAssessment,
        credit_score: int,
    ) -> AnalyzerResult: ...
