"""Closure execution service."""
