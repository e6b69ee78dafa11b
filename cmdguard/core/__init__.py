"""Policy construction, evaluation and runtime adapters."""
