"""HTTP surface for Triage Guard."""
