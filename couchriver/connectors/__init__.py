"""
Connectors for the CouchDB river.
"""
