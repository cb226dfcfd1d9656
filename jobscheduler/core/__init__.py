"""Application wiring: lifespan and error tracking."""
