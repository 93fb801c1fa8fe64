"""
Core modules for Triage Guard.

This package contains the criteria engine, the deterministic classifier,
model pricing, cost estimation and the triage orchestration pipeline.
"""
