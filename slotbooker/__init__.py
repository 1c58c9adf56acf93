"""
slotbooker - availability and booking engine for an artist's books.
"""

__version__ = "0.1.0"
