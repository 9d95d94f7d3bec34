"""
Kraken.io image optimization for WordPress media libraries.
"""

__version__ = "2.7.0"
