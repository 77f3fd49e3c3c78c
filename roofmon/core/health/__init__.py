"""Per-component health assessment and its periodic scheduler."""
