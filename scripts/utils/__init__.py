"""Helpers shared by the GTFS scripts."""
