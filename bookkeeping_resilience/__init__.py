"""
Bookkeeping Resilience - Source Package

The traffic-control layer of the Personal Accountant bookkeeping app.
It protects calls to unreliable downstream services (bank feeds, OCR,
storage APIs) and admits inbound requests at a sustainable rate.

DESIGN PRINCIPLES:
1. Fail fast when a dependency is known to be down
2. Retry only what is worth retrying
3. Never let the protection layer itself take the app down
4. Every state change is logged
5. Time and storage are injected, never global
"""

__version__ = "1.0.0"
__author__ = "Personal Accountant Team"
