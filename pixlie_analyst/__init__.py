"""
Pixlie Analyst - an autonomous data analyst over Hacker News data.

Objectives are worked on by an iterative plan/act/observe loop whose every
step is recorded in a durable, streamable conversation ledger.
"""

__version__ = "0.1.0"
