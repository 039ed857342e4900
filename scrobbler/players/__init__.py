"""Device sessions (one module per player family)."""
