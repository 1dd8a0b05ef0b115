"""Core billing domain for provider payment resilience.

Holds the domain models, tier pricing table, error taxonomy, payment
gateway capability and the state store shared by the billing API.
"""

__version__ = "0.1.0"
