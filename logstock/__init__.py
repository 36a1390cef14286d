"""
Logstock - request-scoped log capture and fixture comparison for web app tests.
"""

__version__ = "1.0.0"
