"""Regional bestseller analytics: metadata caching, snapshot serving, scoring and rankings."""

__version__ = "1.0.0"
