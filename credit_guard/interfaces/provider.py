"""Lending provider adapter: quote retrieval and loan execution."""
from __future__ import annotations

from typing import Protocol

from ..models import CreateLoanRequest, ProviderLoan, Quote


class ProviderAdapter(Protocol):
    """Abstract interface for an external lending provider.

    Every call may fail with a retryable or terminal error; callers wrap
    them with a deadline and bounded retries.
    """

    @property
    def name(self) -> str: ...

    @property
    def connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def health_check(self) -> bool: ...

    async def get_quote(
        self,
        collateral_asset: str,
        collateral_amount: float,
        borrow_asset: str,
        ltv: float | None = None,
    ) -> Quote: ...

    async def create_loan(self, request: CreateLoanRequest) -> ProviderLoan: ...

    async def repay(self, external_id: str, amount: float) -> None: ...

    async def add_collateral(self, external_id: str, asset: str, amount: float) -> None: ...

    async def withdraw_collateral(
        self, external_id: str, asset: str, amount: float
    ) -> None: ...
