"""
Schema exports for the application.
"""

from .listing import ListingState, CatalogSnapshot, ListingSummary
from .job import JobRead
