"""
BizPulse metrics platform

Syncs Stripe, Shopify and Google Analytics data into one metric store and
turns it into ranked, actionable business insights.
"""

__version__ = "1.0.0"
