"""
Triage Guard.

Metered literature-screening pipeline: deterministic rule engine, LLM
provider orchestration and a prepaid usage ledger.
"""

__version__ = "0.1.0"
