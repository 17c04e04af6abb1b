"""Service layer package."""
