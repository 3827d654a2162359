from bookcharts.lookup.google_books import GoogleBooksClient

__all__ = ["GoogleBooksClient"]
