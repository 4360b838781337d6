"""contentpilot: site import and batch scrape into a versioned knowledge base."""

__version__ = "0.3.0"
