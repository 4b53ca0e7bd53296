"""Persistence for perpsim."""
