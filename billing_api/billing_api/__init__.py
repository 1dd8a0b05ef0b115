"""HTTP service for provider billing: lead charges, dunning, disputes and webhooks."""

__version__ = "0.1.0"
