"""Service layer consumed by the presentation layer."""

from .cost_service import CloudCostService

__all__ = ["CloudCostService"]
