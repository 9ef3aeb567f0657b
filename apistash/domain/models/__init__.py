"""Domain models (Value Objects) shared across the resilience components."""
