"""
                Restaurant Order Engine

Order lifecycle and delivery-dispatch backend for a restaurant
delivery platform: pricing, payment reconciliation, courier
dispatch and status tracking behind an async FastAPI service.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
