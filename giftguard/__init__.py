"""
GiftGuard

Fraud detection and automated defense for gift-card redemptions.
"""

__version__ = "1.0.0"
