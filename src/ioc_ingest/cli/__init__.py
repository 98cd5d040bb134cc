"""
Operational CLI for IOC Ingest.
"""
