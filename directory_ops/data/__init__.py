"""Persistence: the record store contract and its in-memory and MongoDB implementations."""
