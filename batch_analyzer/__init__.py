"""
Batch Image Analyzer Package

Batch upload analysis of receipts/tickets and vehicles through a vision model,
with per-image failure isolation and a derived batch summary.
"""

__version__ = "1.0.0"
