"""
couchriver: stream a CouchDB continuous _changes feed into an OpenSearch index.
"""

from .river import CouchDBRiver

__version__ = "0.1.0"

__all__ = ["CouchDBRiver", "__version__"]
