"""
Core Lending System

Simple-interest loan accounting with EMI tracking, payment ledgers and
customer account overviews. All financial calculations use Decimal.
"""

__version__ = "1.0.0"
