"""
Ingestion Module

Seed data for the catalog.
"""
