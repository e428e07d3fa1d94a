"""Agent session registry, process supervision and recovery."""
