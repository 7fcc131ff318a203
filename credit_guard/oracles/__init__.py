"""Price oracle implementations."""
from .pyth import PythOracle
from .static import StaticPriceOracle

__all__ = ["PythOracle", "StaticPriceOracle"]
