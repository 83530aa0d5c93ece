"""
Core modules for Rental Meter.

This package contains period partitioning, rental charge coordination,
free quota tracking and the per-unit charge decision.
"""
