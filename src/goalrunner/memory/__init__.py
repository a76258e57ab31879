"""Agent memory entries and per-skill metrics."""
