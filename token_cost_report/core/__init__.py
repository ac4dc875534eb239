"""
Core modules for token-cost-report.

This package contains pricing, cost resolution, aggregation, billing
blocks, burn-rate forecasting and the report pipeline.
"""
