"""Pure domain layer: DTOs, clock, schedule generation, due selection."""
