"""
Newsdesk - research paper and news harvesting with scheduled digests.
"""

__version__ = "0.1.0"
