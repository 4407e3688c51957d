"""Irrigation automation driven by a soil water balance model."""

from blueberry.irrigation.scheduler import IrrigationScheduler

__all__ = ["IrrigationScheduler"]
