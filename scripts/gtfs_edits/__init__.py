"""Tools for editing GTFS shapes."""
