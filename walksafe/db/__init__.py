"""Persistence: async engine, models, query functions."""
