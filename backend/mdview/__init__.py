"""Market Data Viewer backend."""
