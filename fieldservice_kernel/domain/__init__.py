"""Pure domain layer: value objects, workflow tables and calculations. No I/O."""
