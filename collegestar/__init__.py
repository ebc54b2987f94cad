"""CollegeStar: share, discover and download study notes."""

__version__ = "1.0.0"
