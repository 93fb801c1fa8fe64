"""Settings and tuning configuration."""
