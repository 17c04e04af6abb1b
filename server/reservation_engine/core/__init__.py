"""Configuration, persistence and cross-cutting concerns."""
