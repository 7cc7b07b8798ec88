"""Config-driven entry scripts."""
