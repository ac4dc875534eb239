"""
Log ingestion for token_cost_report.

This package finds usage-log files, decodes their lines and maps each
decoded record to a canonical usage event.
"""
