"""intentweave: cluster browsing history into intents and enrich them."""

__version__ = "0.1.0"
