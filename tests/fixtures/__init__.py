"""Shared test fixtures and factories."""

ADMIN_ACTOR = "admin-1"
