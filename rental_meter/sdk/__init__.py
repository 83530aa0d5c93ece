"""
SDK for Rental Meter.

Provides the metered work unit that producers run under.
"""

from .work_unit import MeteredWorkUnit, WorkUnitReport

__all__ = ["MeteredWorkUnit", "WorkUnitReport"]
