"""Service modules"""
from .health import HealthService
from .lending import LendingService
from .monitor import CollateralMonitor
from .underwriting import UnderwritingEngine

__all__ = ["CollateralMonitor", "HealthService", "LendingService", "UnderwritingEngine"]
