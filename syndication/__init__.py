"""
Syndication engine.

Publishes media attached to source-of-record entries to Airtable, Discord,
Instagram, Facebook and Imgur, with a durable ledger so long migrations can
be paused, resumed and retried without publishing anything twice.
"""

__version__ = "0.1.0"
