"""Service layer for the Study Assistant."""
