"""Infrastructure layer: resilience primitives, logging, configuration and wiring."""
