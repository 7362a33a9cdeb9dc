"""
Fraud Services

Qualified-stream and fraud-stream counting for royalty periods.
"""

from .analyzer import FraudAnalyzer

__all__ = ['FraudAnalyzer']
